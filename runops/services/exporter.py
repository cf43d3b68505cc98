import hashlib
import io
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from openpyxl import Workbook
from openpyxl.styles import Font
from opentelemetry import trace

from runops.services.blob import BlobStore
from runops.services.repository import (
    PipelineRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositorySchemaMissingError,
    RunItemRecord,
)
from runops.services.runs import RunBlockedError, load_validation_masters, validate_items
from runops.services.validation import resolve_job_offer_id

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

BASE_COLUMNS = (
    "job_offer_id",
    "working_location_id",
    "job_type",
    "title",
    "subtitle",
    "description",
)
TSV_CONTENT_TYPE = "text/tab-separated-values; charset=utf-8"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
SHEET_NAME = "airwork"


@dataclass(slots=True)
class RenderedFile:
    content: bytes
    content_type: str
    extension: str
    sha256: str


@dataclass(slots=True)
class GeneratedFile:
    run_id: int
    blob_url: str
    sha256: str
    file_name: str
    content_type: str


def build_columns(items: Iterable[RunItemRecord], field_keys: Sequence[str]) -> list[str]:
    present: set[str] = set()
    for item in items:
        present.update(item.payload)
    extra = [key for key in field_keys if key not in BASE_COLUMNS and key in present]
    return [*BASE_COLUMNS, *extra]


def build_row(item: RunItemRecord, columns: Sequence[str]) -> list[str]:
    row: list[str] = []
    for column in columns:
        if column == "job_offer_id":
            row.append(resolve_job_offer_id(item.payload, item.job_offer_id) or "")
            continue
        value = item.payload.get(column)
        row.append(value if isinstance(value, str) else "")
    return row


def render_tsv(columns: Sequence[str], rows: Sequence[Sequence[str]]) -> bytes:
    lines = ["\t".join(columns)]
    lines.extend("\t".join(_flatten_cell(cell) for cell in row) for row in rows)
    return ("\n".join(lines) + "\n").encode("utf-8")


def render_xlsx(columns: Sequence[str], rows: Sequence[Sequence[str]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = SHEET_NAME
    sheet.append(list(columns))
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for values in rows:
        sheet.append(list(values))
        for cell in sheet[sheet.max_row]:
            cell.number_format = "@"
            # Leading "=" would otherwise be stored as a formula.
            if isinstance(cell.value, str):
                cell.data_type = "s"
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def render_run_file(
    items: Sequence[RunItemRecord],
    field_keys: Sequence[str],
    file_format: str,
) -> RenderedFile:
    columns = build_columns(items, field_keys)
    rows = [build_row(item, columns) for item in items]
    if file_format == "txt":
        content, content_type, extension = render_tsv(columns, rows), TSV_CONTENT_TYPE, "txt"
    else:
        content, content_type, extension = render_xlsx(columns, rows), XLSX_CONTENT_TYPE, "xlsx"
    return RenderedFile(
        content=content,
        content_type=content_type,
        extension=extension,
        sha256=hashlib.sha256(content).hexdigest(),
    )


def _flatten_cell(value: str) -> str:
    return value.replace("\r\n", " ").replace("\t", " ").replace("\n", " ").replace("\r", " ")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileGenerator:
    def __init__(
        self,
        repository: PipelineRepository,
        blob_store: BlobStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.blob_store = blob_store
        self.clock = clock

    async def generate(self, org_id: str, run_id: int) -> GeneratedFile:
        with tracer.start_as_current_span("runs.generate_file") as span:
            span.set_attribute("runops.run_id", run_id)
            async with self.repository.session() as unit:
                run = await unit.get_run(org_id, run_id)
                if run is None:
                    raise RepositoryNotFoundError("run not found")
                items = await unit.list_run_items(run.id)
                if not items:
                    raise RepositoryConflictError("run has no items")
                masters = await load_validation_masters(unit, org_id, run.client_id)
                try:
                    field_keys = await unit.list_field_keys()
                except RepositorySchemaMissingError:
                    field_keys = []

            summary = validate_items(items, masters)
            if summary.blocked:
                logger.warning(
                    "file generation blocked run_id=%s hard_errors=%s",
                    run.id,
                    summary.hard_error_count,
                )
                raise RunBlockedError(summary)

            rendered = render_run_file(items, field_keys, run.file_format or "xlsx")
            timestamp = self.clock().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
            file_name = f"runs/run-{run.id}-{timestamp}.{rendered.extension}"
            stored = await self.blob_store.put(file_name, rendered.content, rendered.content_type)

            async with self.repository.transaction() as unit:
                await unit.set_run_file(
                    run_id=run.id,
                    blob_url=stored.url,
                    sha256=rendered.sha256,
                    status="file_generated",
                )
            span.set_attribute("runops.file_sha256", rendered.sha256)

        logger.info(
            "run file generated run_id=%s format=%s bytes=%s sha256=%s",
            run.id,
            rendered.extension,
            len(rendered.content),
            rendered.sha256,
        )
        return GeneratedFile(
            run_id=run.id,
            blob_url=stored.url,
            sha256=rendered.sha256,
            file_name=file_name,
            content_type=rendered.content_type,
        )
