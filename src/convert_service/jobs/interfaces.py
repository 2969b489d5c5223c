from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from .records import JobRecord, Scalar

if TYPE_CHECKING:
    from .service import JobContext


class JobStore(Protocol):
    """Persistence for job records.

    Mutations on one id are linearizable. Mutators on an unknown id are
    silent no-ops; only ``get`` raises ``JobNotFound``.
    """

    def put(self, job_id: str, record: JobRecord) -> None:
        ...

    def get(self, job_id: str) -> JobRecord:
        ...

    def update_state(self, job_id: str, state: str) -> bool:
        ...

    def update_error(self, job_id: str, code: int, message: str | None) -> bool:
        ...

    def set_custom_value(self, job_id: str, key: str, value: Scalar) -> None:
        ...

    def remove_older_than(self, cutoff: datetime) -> int:
        ...

    def close(self) -> None:
        ...


class ConverterGateway(Protocol):
    def convert(self, job: "JobContext", input_path: str, output_dir: str, context_url: str) -> None:
        """Convert ``input_path`` into ``output_dir``.

        This is a blocking call run on a worker thread. Progress and results
        are reported through ``job``; failures are reported by raising or by
        ``job.do_error``.
        """


class StorageGateway(Protocol):
    def put(self, data: bytes, file_name: str, job_id: str) -> str:
        """Store an output artifact and return a URL it can be fetched from."""


@dataclass(frozen=True)
class WorkItem:
    input_path: str
    output_dir: str
    context_url: str = ""
