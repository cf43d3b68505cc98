import csv
import io
import logging
from dataclasses import dataclass, field

from runops.services.parsing import decode_text
from runops.services.repository import PipelineRepository, RepositoryNotFoundError, RepositoryValidationError

logger = logging.getLogger(__name__)

FIELD_HEADERS = ("field_key", "label_ja", "input_kind", "is_editable", "sort_order", "spec_version")
CODE_HEADERS = ("field_key", "code", "name_ja", "is_active")
INPUT_KINDS = frozenset({"text", "number", "code", "id", "readonly"})


@dataclass(slots=True)
class CsvLineError:
    line: int
    message: str


@dataclass(slots=True)
class FieldMasterEntry:
    field_key: str
    label_ja: str
    input_kind: str
    is_editable: bool
    sort_order: int
    spec_version: str


@dataclass(slots=True)
class CodeMasterEntry:
    field_key: str
    code: str
    name_ja: str
    is_active: bool


@dataclass(slots=True)
class MasterUploadResult:
    applied: int = 0
    errors: list[CsvLineError] = field(default_factory=list)


def parse_bool(value: str) -> bool | None:
    normalized = value.strip().lower()
    if normalized in {"true", "1"}:
        return True
    if normalized in {"false", "0"}:
        return False
    return None


def _read_csv(text: str) -> list[tuple[int, list[str]]]:
    reader = csv.reader(io.StringIO(text))
    rows: list[tuple[int, list[str]]] = []
    start_line = 1
    try:
        for row in reader:
            if any(cell.strip() for cell in row):
                rows.append((start_line, row))
            start_line = reader.line_num + 1
    except csv.Error:
        logger.warning("master csv could not be parsed")
        return []
    return rows


def _check_header(rows: list[tuple[int, list[str]]], expected: tuple[str, ...]) -> list[CsvLineError]:
    if not rows:
        return [CsvLineError(line=1, message="csv has no rows")]
    line, header = rows[0]
    normalized = tuple(value.strip().lstrip("\ufeff") for value in header)
    if normalized != expected:
        return [CsvLineError(line=line, message=f"invalid header; expected: {', '.join(expected)}")]
    return []


def parse_field_master_csv(text: str) -> tuple[list[FieldMasterEntry], list[CsvLineError]]:
    rows = _read_csv(text)
    errors = _check_header(rows, FIELD_HEADERS)
    if errors:
        return [], errors

    entries: list[FieldMasterEntry] = []
    for line, row in rows[1:]:
        if len(row) != len(FIELD_HEADERS):
            errors.append(CsvLineError(line, f"expected {len(FIELD_HEADERS)} columns"))
            continue
        field_key, label_ja, input_kind, is_editable_raw, sort_order_raw, spec_version = (
            value.strip() for value in row
        )
        line_errors: list[str] = []
        if not field_key:
            line_errors.append("field_key is required")
        if not label_ja:
            line_errors.append("label_ja is required")
        if input_kind not in INPUT_KINDS:
            line_errors.append("input_kind must be one of text/number/code/id/readonly")
        is_editable = parse_bool(is_editable_raw)
        if is_editable is None:
            line_errors.append("is_editable must be true/false/1/0")
        try:
            sort_order = int(sort_order_raw)
        except ValueError:
            sort_order = 0
            line_errors.append("sort_order must be an integer")
        if not spec_version:
            line_errors.append("spec_version is required")

        if line_errors:
            errors.extend(CsvLineError(line, message) for message in line_errors)
            continue
        entries.append(
            FieldMasterEntry(
                field_key=field_key,
                label_ja=label_ja,
                input_kind=input_kind,
                is_editable=bool(is_editable),
                sort_order=sort_order,
                spec_version=spec_version,
            )
        )
    return entries, errors


def parse_code_master_csv(text: str) -> tuple[list[CodeMasterEntry], list[CsvLineError]]:
    rows = _read_csv(text)
    errors = _check_header(rows, CODE_HEADERS)
    if errors:
        return [], errors

    entries: list[CodeMasterEntry] = []
    for line, row in rows[1:]:
        if len(row) != len(CODE_HEADERS):
            errors.append(CsvLineError(line, f"expected {len(CODE_HEADERS)} columns"))
            continue
        field_key, code, name_ja, is_active_raw = (value.strip() for value in row)
        line_errors: list[str] = []
        if not field_key:
            line_errors.append("field_key is required")
        if not code:
            line_errors.append("code is required")
        if not name_ja:
            line_errors.append("name_ja is required")
        is_active = parse_bool(is_active_raw)
        if is_active is None:
            line_errors.append("is_active must be true/false/1/0")

        if line_errors:
            errors.extend(CsvLineError(line, message) for message in line_errors)
            continue
        entries.append(CodeMasterEntry(field_key=field_key, code=code, name_ja=name_ja, is_active=bool(is_active)))
    return entries, errors


class MasterService:
    def __init__(self, repository: PipelineRepository) -> None:
        self.repository = repository

    async def upload_fields(self, content: bytes) -> MasterUploadResult:
        entries, errors = parse_field_master_csv(decode_text(content))
        if errors:
            return MasterUploadResult(errors=errors)
        async with self.repository.transaction() as unit:
            for entry in entries:
                await unit.upsert_field(
                    field_key=entry.field_key,
                    label_ja=entry.label_ja,
                    input_kind=entry.input_kind,
                    is_editable=entry.is_editable,
                    sort_order=entry.sort_order,
                    spec_version=entry.spec_version,
                )
        logger.info("field master upserted rows=%s", len(entries))
        return MasterUploadResult(applied=len(entries))

    async def upload_codes(self, content: bytes) -> MasterUploadResult:
        entries, errors = parse_code_master_csv(decode_text(content))
        if errors:
            return MasterUploadResult(errors=errors)
        async with self.repository.transaction() as unit:
            for entry in entries:
                await unit.upsert_code(
                    field_key=entry.field_key,
                    code=entry.code,
                    name_ja=entry.name_ja,
                    is_active=entry.is_active,
                )
        logger.info("code master upserted rows=%s", len(entries))
        return MasterUploadResult(applied=len(entries))

    async def add_location(self, org_id: str, client_id: str, working_location_id: str, name: str | None) -> str:
        location_id = working_location_id.strip()
        if not location_id:
            raise RepositoryValidationError("working_location_id is required")
        async with self.repository.transaction() as unit:
            if not await unit.client_exists(org_id, client_id):
                raise RepositoryNotFoundError("client not found")
            created = await unit.insert_location(client_id, location_id, (name or "").strip() or None)
        logger.info("location added client_id=%s working_location_id=%s", client_id, location_id)
        return created
