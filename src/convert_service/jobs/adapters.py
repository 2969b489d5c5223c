import logging
from pathlib import Path

from .downloads import sanitize_filename
from .errors import ConversionError
from .interfaces import ConverterGateway, StorageGateway
from .service import JobContext

logger = logging.getLogger(__name__)


class LocalStorage(StorageGateway):
    def __init__(self, root: str) -> None:
        self._base = Path(root).resolve()

    def put(self, data: bytes, file_name: str, job_id: str) -> str:
        target = self._base / job_id / sanitize_filename(file_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return target.as_uri()


class DoclingConverter(ConverterGateway):
    """Convert documents to Markdown with docling.

    Writes ``<stem>.md`` to the output directory and, when a storage gateway
    is configured, publishes it and records ``downloadUrl``.
    """

    def __init__(self, storage: StorageGateway | None = None) -> None:
        self._storage = storage

    def convert(self, job: JobContext, input_path: str, output_dir: str, context_url: str) -> None:
        output_path = Path(output_dir) / f"{Path(input_path).stem}.md"
        logger.info("Job %s: converting %s to markdown", job.job_id, Path(input_path).name)
        markdown = self.convert_to_markdown(input_path)
        with output_path.open("w", encoding="utf-8") as f:
            f.write(markdown)
        job.set_custom_value("outputFile", output_path.name)

        if self._storage is not None:
            url = self._storage.put(output_path.read_bytes(), output_path.name, job.job_id)
        elif context_url:
            url = f"{context_url.rstrip('/')}/output/{job.job_id}/{output_path.name}"
        else:
            url = output_path.resolve().as_uri()
        job.set_custom_value("downloadUrl", url)

    def convert_to_markdown(self, input_uri: str) -> str:
        from docling.document_converter import DocumentConverter  # type: ignore

        result = DocumentConverter().convert(input_uri)
        doc = getattr(result, "document", None)
        if doc is None:
            raise ConversionError(f"docling returned no document for {Path(input_uri).name}")
        for m in ("export_to_markdown", "to_markdown", "as_markdown"):
            fn = getattr(doc, m, None)
            if callable(fn):
                return fn()
        raise ConversionError("Doc object does not provide a markdown export method")
