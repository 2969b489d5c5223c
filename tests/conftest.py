from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from convert_service.jobs import MemoryJobStore, SqlJobStore
from convert_service.jobs.service import JobContext


class FakeConverter:
    """Converter stand-in driven by a per-test callable."""

    def __init__(self, action: Callable[[JobContext, str, str], None] | None = None) -> None:
        self.action = action
        self.calls: list[tuple[str, str, str]] = []

    def convert(self, job: JobContext, input_path: str, output_dir: str, context_url: str) -> None:
        self.calls.append((job.job_id, input_path, output_dir))
        if self.action is not None:
            self.action(job, input_path, output_dir)


@pytest.fixture
def memory_store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def sql_store(tmp_path: Path):
    store = SqlJobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        yield MemoryJobStore()
        return
    sql = SqlJobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    yield sql
    sql.close()


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()
