import json
import logging
import os

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse

from convert_service import __version__, config
from convert_service.jobs import (
    FileSizeLimitExceeded,
    InputAcquisitionError,
    JobNotFound,
    JobOrchestrator,
    JobStore,
    Reaper,
    StoreUnavailable,
    create_job_store,
)
from convert_service.jobs.adapters import DoclingConverter, LocalStorage
from convert_service.logging_config import configure_logging

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Conversion Job Service",
    version=os.getenv("CONVERT_SERVICE_VERSION", __version__),
    description=(
        "Accepts file conversion requests, runs them on a bounded worker pool "
        "and reports their progress by polling or callback."
    ),
)

STORE: JobStore | None = None
SERVICE: JobOrchestrator | None = None
REAPER: Reaper | None = None


def _parse_json_form(name: str, raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = None
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail={"code": "bad_request", "message": f"{name} must be a JSON object"})
    return value


def _parse_settings(raw: str | None) -> dict[str, str]:
    return {str(k): str(v) for k, v in _parse_json_form("settings", raw).items()}


def _service() -> JobOrchestrator:
    if SERVICE is None:
        raise HTTPException(status_code=503, detail={"code": "unavailable", "message": "service not started"})
    return SERVICE


@app.on_event("startup")
async def _startup() -> None:
    configure_logging(config.LOG_LEVEL)
    global STORE, SERVICE, REAPER
    STORE = create_job_store(config.DATABASE_URL)
    converter = DoclingConverter(storage=LocalStorage(str(config.STORAGE_DIR)))
    SERVICE = JobOrchestrator(
        STORE,
        converter,
        input_root=config.INPUT_DIR,
        output_root=config.OUTPUT_DIR,
        convert_workers=config.WORKERS,
        download_workers=config.DOWNLOAD_WORKERS,
        callback_workers=config.CALLBACK_WORKERS,
        size_limit=config.size_limit_bytes(),
        download_retries=config.DOWNLOAD_RETRIES,
        callback_max_attempts=config.CALLBACK_MAX_ATTEMPTS,
        callback_retry_delay=config.CALLBACK_RETRY_DELAY_SEC,
    )
    await SERVICE.start()
    if config.REAPER_ENABLED:
        REAPER = Reaper(
            STORE,
            [config.INPUT_DIR, config.OUTPUT_DIR, config.STORAGE_DIR],
            ttl=config.JOB_TTL_SEC,
            interval=config.REAPER_INTERVAL_SEC,
        )
        await REAPER.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global STORE, SERVICE, REAPER
    if REAPER is not None:
        await REAPER.stop()
        REAPER = None
    if SERVICE is not None:
        await SERVICE.stop()
        SERVICE = None
    if STORE is not None:
        STORE.close()
        STORE = None


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    request: Request,
    input: str = Form(...),
    file: UploadFile | None = File(None),
    url: str | None = Form(None),
    settings: str | None = Form(None),
    callbackUrl: str | None = Form(None),
    customData: str | None = Form(None),
) -> JSONResponse:
    """Create a new conversion job.

    ``input=upload`` takes the document from the multipart part named
    "file"; ``input=download`` fetches it from ``url`` in the background.
    Returns 202 Accepted with the job uuid.
    """
    service = _service()
    job_settings = _parse_settings(settings)
    custom_data = _parse_json_form("customData", customData)
    context_url = str(request.base_url).rstrip("/")

    try:
        if input == "upload":
            if file is None:
                raise HTTPException(status_code=400, detail={"code": "bad_request", "message": "Missing file"})

            async def read_chunk(n: int) -> bytes:
                return await file.read(n)

            try:
                job_id = await service.submit_upload(
                    file.filename or "upload",
                    read_chunk,
                    settings=job_settings,
                    callback_url=callbackUrl,
                    custom_data=custom_data,
                    context_url=context_url,
                )
            except FileSizeLimitExceeded as e:
                raise HTTPException(status_code=413, detail={"code": "payload_too_large", "message": str(e), "uuid": e.job_id})
            except InputAcquisitionError as e:
                raise HTTPException(status_code=400, detail={"code": "upload_failed", "message": str(e), "uuid": e.job_id})
        elif input == "download":
            if not url:
                raise HTTPException(status_code=400, detail={"code": "bad_request", "message": "No url given"})
            job_id = service.submit_url(
                url,
                settings=job_settings,
                callback_url=callbackUrl,
                custom_data=custom_data,
                context_url=context_url,
            )
        else:
            raise HTTPException(status_code=400, detail={"code": "bad_request", "message": "Unrecognised input type"})
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "bad_request", "message": str(e)})
    except StoreUnavailable:
        logger.exception("Job store unavailable while creating a job")
        raise HTTPException(status_code=503, detail={"code": "unavailable", "message": "job store unavailable"})

    headers = {"Location": f"/jobs/{job_id}"}
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"uuid": job_id}, headers=headers)


@app.get("/jobs/{job_id}")
async def get_job(job_id: str) -> JSONResponse:
    service = _service()
    try:
        body = service.get_status(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": f"Unknown uuid: {job_id}"})
    except StoreUnavailable:
        logger.exception("Job store unavailable while reading job %s", job_id)
        raise HTTPException(status_code=503, detail={"code": "unavailable", "message": "job store unavailable"})
    return JSONResponse(content=body)


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("convert_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
