"""Tolerant readers for marketplace export and result files.

Every reader degrades to an empty result on malformed input instead of
raising; the uploads come from an external system whose format drifts.
"""

import csv
import io
import logging
import zipfile
import zlib
from datetime import date, datetime, timezone
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

logger = logging.getLogger(__name__)

HEADER_ALIASES: dict[str, str] = {
    "求人番号": "job_offer_id",
    "job_offer_id": "job_offer_id",
    "job offer id": "job_offer_id",
    "掲載ステータス": "publish_status_cache",
    "publish_status": "publish_status_cache",
    "publish_status_cache": "publish_status_cache",
    "last_published_at": "last_published_at",
    "最終掲載日": "last_published_at",
    "freshness_expires_at": "freshness_expires_at",
    "掲載期限": "freshness_expires_at",
    "title": "title",
    "求人タイトル": "title",
    "working_location_id": "working_location_id",
    "勤務地id": "working_location_id",
}

RESULT_MESSAGE_HEADERS = frozenset({"error", "errors", "message", "reason", "エラー内容", "エラー"})
RESULT_ROW_HEADERS = frozenset({"row", "row_number", "行番号", "行"})
RESULT_FIELD_HEADERS = frozenset({"field_key", "field", "item", "項目", "項目名"})
RESULT_JOB_OFFER_HEADERS = frozenset({"job_offer_id", "求人番号", "job_offer"})

_XLSX_ERRORS = (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, TypeError, OSError)


def normalize_header(value: str) -> str:
    lowered = value.strip().lstrip("\ufeff").strip().lower()
    return HEADER_ALIASES.get(lowered, lowered)


def decode_text(content: bytes) -> str:
    return content.decode("utf-8", errors="replace").lstrip("\ufeff")


def detect_delimiter(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return "\t" if "\t" in line else ","
    return ","


def read_delimited_rows(text: str, delimiter: str | None = None) -> list[list[str]]:
    delimiter = delimiter or detect_delimiter(text)
    quoting = csv.QUOTE_NONE if delimiter == "\t" else csv.QUOTE_MINIMAL
    try:
        rows = list(csv.reader(io.StringIO(text), delimiter=delimiter, quoting=quoting))
    except csv.Error:
        logger.warning("delimited text could not be parsed; ignoring upload")
        return []
    return [row for row in rows if any(cell.strip() for cell in row)]


def read_xlsx_rows(content: bytes) -> list[list[str]]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except _XLSX_ERRORS:
        logger.warning("spreadsheet could not be opened; ignoring upload")
        return []

    try:
        if not workbook.worksheets:
            return []
        sheet = workbook.worksheets[0]
        rows = [[_stringify_cell(value) for value in row] for row in sheet.iter_rows(values_only=True)]
    except _XLSX_ERRORS:
        logger.warning("spreadsheet rows could not be read; ignoring upload")
        return []
    finally:
        workbook.close()
    return [row for row in rows if any(cell.strip() for cell in row)]


def rows_to_records(rows: list[list[str]]) -> list[dict[str, str | None]]:
    if not rows:
        return []
    headers = [normalize_header(value) for value in rows[0]]
    records: list[dict[str, str | None]] = []
    for row in rows[1:]:
        record: dict[str, str | None] = {}
        for index, header in enumerate(headers):
            if not header:
                continue
            value = row[index].strip() if index < len(row) else ""
            record[header] = value or None
        if any(value is not None for value in record.values()):
            records.append(record)
    return records


def parse_export_rows(file_name: str, content: bytes) -> list[dict[str, str | None]]:
    if file_name.lower().endswith(".xlsx"):
        rows = read_xlsx_rows(content)
    else:
        rows = read_delimited_rows(decode_text(content))
    return rows_to_records(rows)


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip().replace("/", "-")
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(text[:10]), datetime.min.time())
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_zip_text_members(content: bytes) -> list[tuple[str, bytes]]:
    """``.txt`` members of a zip archive; only stored and deflated entries are read."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except (zipfile.BadZipFile, OSError, ValueError):
        logger.warning("result archive is not a readable zip; ignoring upload")
        return []

    members: list[tuple[str, bytes]] = []
    with archive:
        for info in archive.infolist():
            if info.is_dir() or not info.filename.lower().endswith(".txt"):
                continue
            if info.compress_type not in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED):
                logger.info("skipping zip member name=%s compress_type=%s", info.filename, info.compress_type)
                continue
            try:
                members.append((info.filename, archive.read(info)))
            except (zipfile.BadZipFile, zlib.error, RuntimeError, EOFError, OSError):
                logger.warning("skipping unreadable zip member name=%s", info.filename)
    return members


def parse_result_text(text: str, source_file: str | None = None) -> list[dict[str, Any]]:
    """Result errors from one delimited text file.

    Without a recognizable message column every non-empty line becomes one
    opaque error message.
    """
    rows = read_delimited_rows(text)
    if not rows:
        return []

    headers = [normalize_header(value) for value in rows[0]]
    message_index = _find_header(headers, RESULT_MESSAGE_HEADERS)
    if message_index is None:
        return [
            _result_error(line.strip(), source_file=source_file)
            for line in text.splitlines()
            if line.strip()
        ]

    row_index = _find_header(headers, RESULT_ROW_HEADERS)
    field_index = _find_header(headers, RESULT_FIELD_HEADERS)
    offer_index = _find_header(headers, RESULT_JOB_OFFER_HEADERS)

    errors: list[dict[str, Any]] = []
    for row in rows[1:]:
        message = _cell(row, message_index)
        if not message:
            continue
        errors.append(
            _result_error(
                message,
                field_key=_cell(row, field_index),
                row_number=_parse_row_number(_cell(row, row_index)),
                job_offer_id=_cell(row, offer_index),
                source_file=source_file,
            )
        )
    return errors


def parse_result_upload(file_name: str, content: bytes) -> list[dict[str, Any]]:
    if file_name.lower().endswith(".zip"):
        errors: list[dict[str, Any]] = []
        for member_name, data in extract_zip_text_members(content):
            errors.extend(parse_result_text(decode_text(data), member_name))
        return errors
    return parse_result_text(decode_text(content), file_name)


def _find_header(headers: list[str], names: frozenset[str]) -> int | None:
    for index, header in enumerate(headers):
        if header in names:
            return index
    return None


def _cell(row: list[str], index: int | None) -> str | None:
    if index is None or index >= len(row):
        return None
    value = row[index].strip()
    return value or None


def _parse_row_number(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        number = int(float(value))
    except (ValueError, OverflowError):
        return None
    return number if number > 0 else None


def _result_error(
    message: str,
    *,
    field_key: str | None = None,
    row_number: int | None = None,
    job_offer_id: str | None = None,
    source_file: str | None = None,
) -> dict[str, Any]:
    return {
        "message": message,
        "field_key": field_key,
        "row_number": row_number,
        "job_offer_id": job_offer_id,
        "source_file": source_file,
    }


def _stringify_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
