from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
import requests

from convert_service.jobs import (
    ConversionError,
    FileSizeLimitExceeded,
    InputAcquisitionError,
    JobNotFound,
    JobOrchestrator,
    WorkItem,
)
from convert_service.jobs.records import JobState

from .conftest import FakeConverter

pytestmark = pytest.mark.asyncio


def _orchestrator(store, converter, tmp_path: Path, **kwargs) -> JobOrchestrator:
    kwargs.setdefault("callback_retry_delay", 0.01)
    return JobOrchestrator(
        store,
        converter,
        input_root=tmp_path / "input",
        output_root=tmp_path / "output",
        convert_workers=2,
        **kwargs,
    )


async def _run(service: JobOrchestrator, submit) -> str:
    await service.start()
    try:
        job_id = submit()
        if asyncio.iscoroutine(job_id):
            job_id = await job_id
        await asyncio.wait_for(service.drain(), timeout=10)
        return job_id
    finally:
        await service.stop()


def _source(tmp_path: Path, name: str = "doc.pdf") -> Path:
    path = tmp_path / name
    path.write_bytes(b"%PDF-1.7")
    return path


async def test_created_job_is_queued(store, converter, tmp_path: Path) -> None:
    service = _orchestrator(store, converter, tmp_path)

    job_id = service.create_job({"format": "md"}, None, {"ticket": 1})

    assert service.get_status(job_id) == {"state": "queued"}
    assert dict(store.get(job_id).settings) == {"format": "md"}


async def test_status_of_unknown_job(store, converter, tmp_path: Path) -> None:
    service = _orchestrator(store, converter, tmp_path)

    with pytest.raises(JobNotFound):
        service.get_status("nope")


async def test_successful_conversion_reports_custom_values(store, tmp_path: Path) -> None:
    seen_states = []

    def action(job, input_path, output_dir):
        seen_states.append(store.get(job.job_id).state)
        assert job.settings["format"] == "md"
        assert job.custom_data["ticket"] == 1
        Path(output_dir, "doc.md").write_text("# doc")
        job.set_custom_value("pages", "10")

    converter = FakeConverter(action)
    service = _orchestrator(store, converter, tmp_path)

    job_id = await _run(
        service,
        lambda: service.submit_path(_source(tmp_path), settings={"format": "md"}, custom_data={"ticket": 1}),
    )

    assert seen_states == [JobState.PROCESSING]
    assert service.get_status(job_id) == {"state": "processed", "pages": "10"}
    assert (tmp_path / "output" / job_id / "doc.md").read_text() == "# doc"


async def test_unexpected_exception_maps_to_conversion_failed(store, tmp_path: Path) -> None:
    def action(job, input_path, output_dir):
        raise RuntimeError("converter crashed")

    service = _orchestrator(store, FakeConverter(action), tmp_path)

    job_id = await _run(service, lambda: service.submit_path(_source(tmp_path)))

    status = service.get_status(job_id)
    assert status["state"] == "error"
    assert status["errorCode"] == "1050"
    assert "converter crashed" in status["error"]


async def test_conversion_error_keeps_its_code(store, tmp_path: Path) -> None:
    def action(job, input_path, output_dir):
        raise ConversionError("unsupported format", code=1300)

    service = _orchestrator(store, FakeConverter(action), tmp_path)

    job_id = await _run(service, lambda: service.submit_path(_source(tmp_path)))

    assert service.get_status(job_id) == {"state": "error", "errorCode": "1300", "error": "unsupported format"}


async def test_error_reported_by_converter_is_final(store, tmp_path: Path) -> None:
    def action(job, input_path, output_dir):
        job.set_custom_value("pages", 3)
        job.do_error(1400, "password protected")

    service = _orchestrator(store, FakeConverter(action), tmp_path)

    job_id = await _run(service, lambda: service.submit_path(_source(tmp_path)))

    assert service.get_status(job_id) == {
        "state": "error",
        "errorCode": "1400",
        "error": "password protected",
        "pages": 3,
    }


async def test_non_scalar_custom_value_fails_job(store, tmp_path: Path) -> None:
    def action(job, input_path, output_dir):
        job.set_custom_value("ratio", 0.5)

    service = _orchestrator(store, FakeConverter(action), tmp_path)

    job_id = await _run(service, lambda: service.submit_path(_source(tmp_path)))

    assert service.get_status(job_id)["errorCode"] == "1050"


async def test_failed_download_never_reaches_processing(memory_store, converter, tmp_path: Path, mocker) -> None:
    resp = mocker.MagicMock()
    resp.__enter__.return_value = resp
    resp.raise_for_status.side_effect = requests.exceptions.HTTPError("404 Client Error")
    get = mocker.patch("convert_service.jobs.downloads.requests.get", return_value=resp)
    update_state = mocker.spy(memory_store, "update_state")
    service = _orchestrator(memory_store, converter, tmp_path, download_retries=2)

    job_id = await _run(service, lambda: service.submit_url("http://files.example/missing.pdf"))

    status = service.get_status(job_id)
    assert status["state"] == "error"
    assert status["errorCode"] == "1200"
    assert get.call_count == 2
    assert update_state.call_count == 0
    assert converter.calls == []


async def test_downloaded_input_is_converted(memory_store, converter, tmp_path: Path, mocker) -> None:
    resp = mocker.MagicMock()
    resp.__enter__.return_value = resp
    resp.headers = {}
    resp.iter_content.return_value = iter([b"%PDF-1.7"])
    mocker.patch("convert_service.jobs.downloads.requests.get", return_value=resp)
    service = _orchestrator(memory_store, converter, tmp_path)

    job_id = await _run(service, lambda: service.submit_url("http://files.example/report.pdf?x=1"))

    assert service.get_status(job_id) == {"state": "processed"}
    (called_id, input_path, _), = converter.calls
    assert called_id == job_id
    assert Path(input_path) == tmp_path / "input" / job_id / "report.pdf"


async def test_callback_receives_final_snapshot(store, tmp_path: Path, mocker) -> None:
    ok = mocker.Mock(status_code=200)
    post = mocker.patch("convert_service.jobs.callbacks.requests.post", return_value=ok)

    def action(job, input_path, output_dir):
        job.set_custom_value("pages", "10")

    service = _orchestrator(store, FakeConverter(action), tmp_path)

    await _run(
        service,
        lambda: service.submit_path(_source(tmp_path), callback_url="http://client.example/done"),
    )

    post.assert_called_once()
    assert post.call_args.args[0] == "http://client.example/done"
    assert json.loads(post.call_args.kwargs["data"]) == {"state": "processed", "pages": "10"}


async def test_callback_failure_does_not_change_job(store, tmp_path: Path, mocker) -> None:
    post = mocker.patch(
        "convert_service.jobs.callbacks.requests.post",
        side_effect=requests.exceptions.ConnectionError("refused"),
    )
    service = _orchestrator(store, FakeConverter(), tmp_path, callback_max_attempts=3)

    job_id = await _run(
        service,
        lambda: service.submit_path(_source(tmp_path), callback_url="http://client.example/done"),
    )

    assert post.call_count == 3
    assert service.get_status(job_id) == {"state": "processed"}


async def test_no_callback_without_url(store, converter, tmp_path: Path, mocker) -> None:
    post = mocker.patch("convert_service.jobs.callbacks.requests.post")
    service = _orchestrator(store, converter, tmp_path)

    await _run(service, lambda: service.submit_path(_source(tmp_path)))

    post.assert_not_called()


def _reader(chunks: list[bytes]):
    pending = list(chunks)

    async def read(n: int) -> bytes:
        return pending.pop(0) if pending else b""

    return read


async def test_upload_is_stored_and_converted(store, converter, tmp_path: Path) -> None:
    service = _orchestrator(store, converter, tmp_path)

    job_id = await _run(service, lambda: service.submit_upload("My Report.pdf", _reader([b"%PDF", b"-1.7"])))

    assert service.get_status(job_id) == {"state": "processed"}
    stored = tmp_path / "input" / job_id / "My_Report.pdf"
    assert stored.read_bytes() == b"%PDF-1.7"


async def test_upload_over_limit_fails_before_processing(store, converter, tmp_path: Path, mocker) -> None:
    post = mocker.patch("convert_service.jobs.callbacks.requests.post", return_value=mocker.Mock(status_code=200))
    service = _orchestrator(store, converter, tmp_path, size_limit=1000)
    await service.start()
    try:
        with pytest.raises(FileSizeLimitExceeded) as exc_info:
            await service.submit_upload(
                "big.pdf",
                _reader([b"x" * 600, b"x" * 600]),
                callback_url="http://client.example/done",
            )
        await asyncio.wait_for(service.drain(), timeout=10)
    finally:
        await service.stop()

    job_id = exc_info.value.job_id
    status = service.get_status(job_id)
    assert status["state"] == "error"
    assert status["errorCode"] == "1210"
    assert not (tmp_path / "input" / job_id / "big.pdf").exists()
    assert converter.calls == []
    assert json.loads(post.call_args.kwargs["data"])["errorCode"] == "1210"


async def test_rejected_start_skips_conversion(memory_store, converter, tmp_path: Path) -> None:
    service = _orchestrator(memory_store, converter, tmp_path)
    await service.start()
    try:
        job_id = service.create_job()
        memory_store.update_error(job_id, 1050, "cancelled")
        service.dispatch(job_id, WorkItem(str(_source(tmp_path)), str(service.output_dir(job_id))))
        await asyncio.wait_for(service.drain(), timeout=10)
    finally:
        await service.stop()

    assert converter.calls == []
    assert service.get_status(job_id)["error"] == "cancelled"


async def test_many_jobs_finish(store, tmp_path: Path) -> None:
    def action(job, input_path, output_dir):
        job.set_custom_value("name", Path(input_path).name)

    service = _orchestrator(store, FakeConverter(action), tmp_path)
    await service.start()
    try:
        ids = [service.submit_path(_source(tmp_path, f"doc{i}.pdf")) for i in range(10)]
        await asyncio.wait_for(service.drain(), timeout=20)
    finally:
        await service.stop()

    for i, job_id in enumerate(ids):
        assert service.get_status(job_id) == {"state": "processed", "name": f"doc{i}.pdf"}


async def test_interrupted_upload_fails_job(store, converter, tmp_path: Path, mocker) -> None:
    post = mocker.patch("convert_service.jobs.callbacks.requests.post", return_value=mocker.Mock(status_code=200))
    sent = [b"%PDF"]

    async def read(n: int) -> bytes:
        if sent:
            return sent.pop()
        raise ConnectionResetError("client went away")

    service = _orchestrator(store, converter, tmp_path)
    await service.start()
    try:
        with pytest.raises(InputAcquisitionError) as exc_info:
            await service.submit_upload("doc.pdf", read, callback_url="http://client.example/done")
        await asyncio.wait_for(service.drain(), timeout=10)
    finally:
        await service.stop()

    job_id = exc_info.value.job_id
    status = service.get_status(job_id)
    assert status["state"] == "error"
    assert status["errorCode"] == "1200"
    assert "client went away" in status["error"]
    assert not store.get(job_id).alive
    assert not (tmp_path / "input" / job_id / "doc.pdf").exists()
    assert converter.calls == []
    assert json.loads(post.call_args.kwargs["data"])["state"] == "error"


async def test_unwritable_upload_target_fails_job(memory_store, converter, tmp_path: Path) -> None:
    # input root is a plain file, so the job directory cannot be created
    (tmp_path / "input").write_bytes(b"")
    service = _orchestrator(memory_store, converter, tmp_path)

    with pytest.raises(InputAcquisitionError) as exc_info:
        await service.submit_upload("doc.pdf", _reader([b"%PDF"]))

    record = memory_store.get(exc_info.value.job_id)
    assert record.state == JobState.ERROR
    assert record.error_code == 1200


async def test_dot_dot_upload_name_stays_in_job_dir(store, converter, tmp_path: Path) -> None:
    service = _orchestrator(store, converter, tmp_path)

    job_id = await _run(service, lambda: service.submit_upload("..", _reader([b"%PDF"])))

    assert service.get_status(job_id) == {"state": "processed"}
    assert (tmp_path / "input" / job_id / "upload").read_bytes() == b"%PDF"


async def test_output_dir_is_created_fresh_by_the_worker(store, tmp_path: Path) -> None:
    seen = []

    def action(job, input_path, output_dir):
        seen.append(sorted(p.name for p in Path(output_dir).iterdir()))

    service = _orchestrator(store, FakeConverter(action), tmp_path)
    await service.start()
    try:
        job_id = service.create_job()
        stale = service.output_dir(job_id)
        stale.mkdir(parents=True)
        (stale / "old.md").write_text("stale")
        service.dispatch(job_id, WorkItem(str(_source(tmp_path)), str(stale)))
        await asyncio.wait_for(service.drain(), timeout=10)
    finally:
        await service.stop()

    assert seen == [[]]
    assert service.get_status(job_id) == {"state": "processed"}


async def test_unexpected_download_error_fails_job(memory_store, converter, tmp_path: Path, mocker) -> None:
    mocker.patch(
        "convert_service.jobs.service.Downloader.fetch",
        side_effect=PermissionError("input directory is read-only"),
    )
    service = _orchestrator(memory_store, converter, tmp_path)

    job_id = await _run(service, lambda: service.submit_url("http://files.example/doc.pdf"))

    status = service.get_status(job_id)
    assert status["state"] == "error"
    assert status["errorCode"] == "1200"
    assert converter.calls == []
