import asyncio
import logging
import shutil
import uuid
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from .callbacks import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY, CallbackDispatcher
from .downloads import Downloader, sanitize_filename
from .errors import (
    ConversionError,
    DownloadFailed,
    ErrorCode,
    FileSizeLimitExceeded,
    InputAcquisitionError,
    JobNotFound,
)
from .interfaces import ConverterGateway, JobStore, WorkItem
from .pools import WorkerPool
from .records import JobRecord, JobState, Scalar

logger = logging.getLogger(__name__)

Reader = Callable[[int], Awaitable[bytes]]

CHUNK = 1024 * 1024


class JobContext:
    """Handle through which a converter reports into its job.

    Safe to use from the converter's worker thread.
    """

    def __init__(self, store: JobStore, record: JobRecord) -> None:
        self._store = store
        self.job_id = record.id
        self.settings: Mapping[str, str] = record.settings
        self.custom_data: Mapping[str, Any] = record.custom_data

    def set_custom_value(self, key: str, value: Scalar) -> None:
        if not isinstance(value, (str, bool, int)):
            raise TypeError(f"custom value {key!r} must be str, bool or int, not {type(value).__name__}")
        self._store.set_custom_value(self.job_id, key, value)

    def do_error(self, code: int, message: str | None = None) -> None:
        if not self._store.update_error(self.job_id, code, message):
            logger.warning("Job %s: ignored error %s, job already finished", self.job_id, code)

    def set_state(self, state: str) -> None:
        if not self._store.update_state(self.job_id, state):
            logger.warning("Job %s: rejected transition to %s", self.job_id, state)


class JobOrchestrator:
    """Core service orchestrating conversion jobs.

    Owns the download, convert and callback pools. Jobs are created queued,
    run on the convert pool, and end processed or error; a client callback,
    if given, is sent once the job is finished.
    """

    def __init__(
        self,
        store: JobStore,
        converter: ConverterGateway,
        *,
        input_root: str | Path,
        output_root: str | Path,
        convert_workers: int = 4,
        download_workers: int = 5,
        callback_workers: int = 5,
        size_limit: int | None = None,
        download_retries: int = 2,
        callback_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        callback_retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self._store = store
        self._converter = converter
        self._input_root = Path(input_root).resolve()
        self._output_root = Path(output_root).resolve()
        self._size_limit = size_limit or None
        self._download_pool = WorkerPool("download", download_workers)
        self._convert_pool = WorkerPool("convert", convert_workers)
        self._callback_pool = WorkerPool("callback", callback_workers)
        self._downloader = Downloader(retries=download_retries, size_limit=self._size_limit)
        self._callbacks = CallbackDispatcher(
            self._callback_pool,
            max_attempts=callback_max_attempts,
            retry_delay=callback_retry_delay,
        )

    @property
    def store(self) -> JobStore:
        return self._store

    async def start(self) -> None:
        for d in (self._input_root, self._output_root):
            d.mkdir(parents=True, exist_ok=True)
        for pool in (self._download_pool, self._convert_pool, self._callback_pool):
            await pool.start()

    async def stop(self) -> None:
        for pool in (self._download_pool, self._convert_pool, self._callback_pool):
            await pool.stop()

    async def drain(self) -> None:
        """Wait for all queued downloads, conversions and callbacks, retries included."""
        await self._download_pool.join()
        await self._convert_pool.join()
        await self._callback_pool.join()

    # -- job creation ------------------------------------------------------

    def create_job(
        self,
        settings: Mapping[str, str] | None = None,
        callback_url: str | None = None,
        custom_data: Mapping[str, Any] | None = None,
    ) -> str:
        job_id = str(uuid.uuid4())
        record = JobRecord(
            id=job_id,
            settings=dict(settings or {}),
            custom_data=dict(custom_data or {}),
            callback_url=callback_url or None,
        )
        self._store.put(job_id, record)
        logger.info("Job %s created", job_id)
        return job_id

    def input_dir(self, job_id: str) -> Path:
        return self._input_root / job_id

    def output_dir(self, job_id: str) -> Path:
        return self._output_root / job_id

    def submit_path(
        self,
        input_path: str | Path,
        *,
        settings: Mapping[str, str] | None = None,
        callback_url: str | None = None,
        custom_data: Mapping[str, Any] | None = None,
        context_url: str = "",
    ) -> str:
        """Create a job for a file already on disk and queue its conversion."""
        job_id = self.create_job(settings, callback_url, custom_data)
        self.dispatch(job_id, WorkItem(str(input_path), str(self.output_dir(job_id)), context_url))
        return job_id

    async def submit_upload(
        self,
        filename: str,
        reader: Reader,
        *,
        settings: Mapping[str, str] | None = None,
        callback_url: str | None = None,
        custom_data: Mapping[str, Any] | None = None,
        context_url: str = "",
    ) -> str:
        """Stream an upload into the job's input directory and queue its conversion.

        A size-limit breach fails the job before processing and raises
        ``FileSizeLimitExceeded`` carrying the job id. Any other failure while
        receiving the bytes fails the job with ``InputAcquisitionError``.
        """
        job_id = self.create_job(settings, callback_url, custom_data)
        input_path = self.input_dir(job_id) / sanitize_filename(filename or "upload")

        try:
            size_bytes = await self._read_upload(reader, input_path)
        except FileSizeLimitExceeded as exc:
            exc.job_id = job_id
            self._discard_upload(input_path)
            self._fail_input(job_id, exc)
            raise
        except Exception as e:
            self._discard_upload(input_path)
            exc = InputAcquisitionError(f"Failed to receive upload: {e}", job_id=job_id)
            self._fail_input(job_id, exc)
            raise exc from e

        logger.info("Job %s: received upload %s (%d bytes)", job_id, input_path.name, size_bytes)
        self.dispatch(job_id, WorkItem(str(input_path), str(self.output_dir(job_id)), context_url))
        return job_id

    async def _read_upload(self, reader: Reader, input_path: Path) -> int:
        input_path.parent.mkdir(parents=True, exist_ok=True)
        size_bytes = 0
        with input_path.open("wb") as f_out:
            while True:
                chunk = await reader(CHUNK)
                if not chunk:
                    break
                size_bytes += len(chunk)
                if self._size_limit and size_bytes > self._size_limit:
                    raise FileSizeLimitExceeded(f"upload exceeds {self._size_limit} bytes")
                f_out.write(chunk)
        return size_bytes

    @staticmethod
    def _discard_upload(input_path: Path) -> None:
        try:
            input_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Unable to remove partial upload %s", input_path, exc_info=True)

    def submit_url(
        self,
        url: str,
        *,
        settings: Mapping[str, str] | None = None,
        callback_url: str | None = None,
        custom_data: Mapping[str, Any] | None = None,
        context_url: str = "",
    ) -> str:
        """Create a job whose input is fetched on the download pool."""
        job_id = self.create_job(settings, callback_url, custom_data)
        self._download_pool.submit(partial(self._download, job_id, url, context_url))
        return job_id

    # -- execution ---------------------------------------------------------

    def dispatch(self, job_id: str, item: WorkItem) -> None:
        self._convert_pool.submit(partial(self._run_conversion, job_id, item))

    async def _download(self, job_id: str, url: str, context_url: str) -> None:
        try:
            input_path = await asyncio.to_thread(self._downloader.fetch, url, self.input_dir(job_id))
        except InputAcquisitionError as exc:
            self._fail_input(job_id, exc)
            return
        except Exception as e:
            logger.exception("Job %s: download of %s raised", job_id, url)
            self._fail_input(job_id, DownloadFailed(f"Failed to download {url}: {e}", job_id=job_id))
            return
        self.dispatch(job_id, WorkItem(str(input_path), str(self.output_dir(job_id)), context_url))

    def _fail_input(self, job_id: str, exc: InputAcquisitionError) -> None:
        logger.warning("Job %s: input acquisition failed: %s", job_id, exc)
        self._store.update_error(job_id, exc.code, str(exc))
        self._notify(job_id)

    async def _run_conversion(self, job_id: str, item: WorkItem) -> None:
        if not self._store.update_state(job_id, JobState.PROCESSING):
            logger.warning("Job %s is no longer queued, skipping conversion", job_id)
            return
        try:
            record = self._store.get(job_id)
            context = JobContext(self._store, record)
            await asyncio.to_thread(_fresh_dir, Path(item.output_dir))
            await asyncio.to_thread(
                self._converter.convert, context, item.input_path, item.output_dir, item.context_url
            )
            if self._store.update_state(job_id, JobState.PROCESSED):
                logger.info("Job %s processed", job_id)
        except ConversionError as exc:
            logger.warning("Job %s failed with code %s: %s", job_id, exc.code, exc)
            self._store.update_error(job_id, exc.code, str(exc))
        except Exception as exc:
            logger.exception("Job %s: converter raised", job_id)
            self._store.update_error(job_id, ErrorCode.CONVERSION_FAILED, str(exc) or type(exc).__name__)
        finally:
            self._finalize(job_id)
        self._notify(job_id)

    def _finalize(self, job_id: str) -> None:
        try:
            record = self._store.get(job_id)
        except JobNotFound:
            return
        if record.alive:
            logger.error("Job %s left %s, marking as failed", job_id, record.state)
            self._store.update_error(
                job_id, ErrorCode.CONVERSION_FAILED, "Conversion ended without a result"
            )

    def _notify(self, job_id: str) -> None:
        try:
            record = self._store.get(job_id)
        except JobNotFound:
            return
        if record.callback_url:
            self._callbacks.deliver(record.callback_url, record.snapshot())

    # -- queries -----------------------------------------------------------

    def get_status(self, job_id: str) -> dict[str, object]:
        return self._store.get(job_id).snapshot().as_dict()


def _fresh_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
