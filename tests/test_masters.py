from __future__ import annotations

import asyncio

import pytest

from runops.services.masters import MasterService, parse_bool, parse_code_master_csv, parse_field_master_csv
from runops.services.repository import RepositoryConstraintError, RepositoryNotFoundError, RepositoryValidationError

FIELD_CSV = (
    "\ufefffield_key,label_ja,input_kind,is_editable,sort_order,spec_version\n"
    "title,タイトル,text,true,1,2024-01\n"
    "job_type,雇用形態,code,1,2,2024-01\n"
)


def test_parse_bool_accepts_only_known_spellings() -> None:
    assert parse_bool(" TRUE ") is True
    assert parse_bool("0") is False
    assert parse_bool("yes") is None


def test_field_master_csv_parses_rows() -> None:
    entries, errors = parse_field_master_csv(FIELD_CSV)
    assert errors == []
    assert [entry.field_key for entry in entries] == ["title", "job_type"]
    assert entries[1].input_kind == "code"
    assert entries[1].is_editable is True
    assert entries[1].sort_order == 2


def test_field_master_csv_reports_line_errors() -> None:
    text = (
        "field_key,label_ja,input_kind,is_editable,sort_order,spec_version\n"
        "title,タイトル,richtext,maybe,first,2024-01\n"
        "short,row\n"
    )
    _, errors = parse_field_master_csv(text)
    assert [(error.line, error.message) for error in errors] == [
        (2, "input_kind must be one of text/number/code/id/readonly"),
        (2, "is_editable must be true/false/1/0"),
        (2, "sort_order must be an integer"),
        (3, "expected 6 columns"),
    ]


def test_code_master_csv_rejects_wrong_header() -> None:
    entries, errors = parse_code_master_csv("field,code,name,active\njob_type,FT,正社員,true\n")
    assert entries == []
    assert errors[0].line == 1
    assert errors[0].message.startswith("invalid header")


def test_upload_with_errors_applies_nothing(repository) -> None:
    text = FIELD_CSV + "broken,,text,true,3,2024-01\n"
    result = asyncio.run(MasterService(repository).upload_fields(text.encode("utf-8")))
    assert result.applied == 0
    assert [error.line for error in result.errors] == [4]
    assert repository.state.fields == {}


def test_uploads_upsert_masters(repository) -> None:
    service = MasterService(repository)
    fields = asyncio.run(service.upload_fields(FIELD_CSV.encode("utf-8")))
    codes = asyncio.run(
        service.upload_codes("field_key,code,name_ja,is_active\njob_type,FT,正社員,true\njob_type,PT,パート,0\n".encode())
    )
    again = asyncio.run(service.upload_codes(b"field_key,code,name_ja,is_active\njob_type,PT,Part time,1\n"))

    assert fields.applied == 2
    assert codes.applied == 2
    assert again.applied == 1
    assert repository.state.codes[("job_type", "PT")]["is_active"] is True
    assert repository.state.codes[("job_type", "PT")]["name_ja"] == "Part time"


def test_add_location_checks_client_and_duplicates(repository, seeder) -> None:
    client_id = asyncio.run(seeder.client(locations=()))
    service = MasterService(repository)

    asyncio.run(service.add_location("org-1", client_id, " LOC-7 ", "Osaka"))
    assert {row["working_location_id"] for row in repository.state.locations.values()} == {"LOC-7"}

    with pytest.raises(RepositoryConstraintError):
        asyncio.run(service.add_location("org-1", client_id, "LOC-7", None))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(service.add_location("org-2", client_id, "LOC-8", None))
    with pytest.raises(RepositoryValidationError):
        asyncio.run(service.add_location("org-1", client_id, "  ", None))
