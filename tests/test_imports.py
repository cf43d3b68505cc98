from __future__ import annotations

import asyncio
import io
import zipfile
from datetime import datetime, timezone

from openpyxl import Workbook

from runops.services.imports import ImportReconciler, assign_result_errors, build_fingerprint
from runops.services.parsing import (
    extract_zip_text_members,
    parse_datetime,
    parse_export_rows,
    parse_result_text,
    parse_result_upload,
)
from runops.services.repository import RunItemRecord
from runops.services.runs import RunService

ORG_ID = "org-1"
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

EXPORT_TSV = (
    "求人番号\t求人タイトル\t勤務地ID\t掲載ステータス\t最終掲載日\n"
    "A-777\tWarehouse picker\tLOC-1\tpublished\t2026/02/20\n"
    "A-999\tUnknown role\tLOC-5\tpublished\t2026/02/20\n"
)


def _item(item_id: int, job_offer_id: str | None = None) -> RunItemRecord:
    return RunItemRecord(
        id=item_id,
        run_id=1,
        job_posting_id=f"posting-{item_id}",
        job_revision_id=f"revision-{item_id}",
        action="update" if job_offer_id else "create",
        job_id=f"job-{item_id}",
        job_title="Picker",
        job_offer_id=job_offer_id,
    )


def _zip(members: dict[str, tuple[bytes, int]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, (data, method) in members.items():
            archive.writestr(name, data, compress_type=method)
    return buffer.getvalue()


def _create_run(repository, seeder, **job_kwargs):
    async def scenario():
        client_id = await seeder.client()
        seeded = await seeder.approved_job(client_id, **job_kwargs)
        run = await RunService(repository).create_run(ORG_ID, client_id)
        return seeded, run.run_id

    return asyncio.run(scenario())


def test_fingerprint_is_trimmed_and_case_insensitive() -> None:
    assert build_fingerprint(" Warehouse Picker ", "loc-1 ") == build_fingerprint("warehouse picker", "LOC-1")


def test_scenario_export_sync_links_offer_id_once(repository, seeder, blob_store) -> None:
    seeded, run_id = _create_run(repository, seeder)
    reconciler = ImportReconciler(repository, blob_store, clock=lambda: NOW)

    first = asyncio.run(
        reconciler.import_export_sync(
            ORG_ID, run_id, user_id="user-7", file_name="export.txt", content=EXPORT_TSV.encode(), content_type="text/plain"
        )
    )
    posting = repository.state.postings[seeded.posting_id]
    assert first.matched == 1
    assert first.unmatched == 1
    assert first.updated == 1
    assert posting["job_offer_id"] == "A-777"
    assert posting["publish_status_cache"] == "published"
    assert posting["last_published_at"] == datetime(2026, 2, 20, tzinfo=timezone.utc)

    renamed = EXPORT_TSV.replace("A-777", "A-778")
    second = asyncio.run(
        reconciler.import_export_sync(
            ORG_ID, run_id, user_id="user-7", file_name="export.txt", content=renamed.encode(), content_type="text/plain"
        )
    )
    assert second.unmatched == 1
    assert repository.state.postings[seeded.posting_id]["job_offer_id"] == "A-777"

    archived = [name for name in blob_store.objects if name.startswith(f"runs/{run_id}/imports/")]
    assert len(archived) == 2
    assert all(name.endswith("-export.txt") for name in archived)
    assert {blob_store.objects[name][0] for name in archived} == {EXPORT_TSV.encode(), renamed.encode()}
    actions = [entry["action"] for entry in repository.state.audit_logs]
    assert actions.count("import_airwork_export") == 2


def test_blank_export_cells_keep_existing_values(repository, seeder, blob_store) -> None:
    seeded, run_id = _create_run(repository, seeder, job_offer_id="A-777")
    repository.state.postings[seeded.posting_id]["publish_status_cache"] = "published"
    content = "job_offer_id\tpublish_status\tlast_published_at\nA-777\t\t\n".encode()

    summary = asyncio.run(
        ImportReconciler(repository, blob_store).import_export_sync(
            ORG_ID, run_id, user_id=None, file_name="export.tsv", content=content, content_type="text/plain"
        )
    )
    assert summary.matched == 1
    assert repository.state.postings[seeded.posting_id]["publish_status_cache"] == "published"


def test_non_blank_export_cells_replace_existing_values(repository, seeder, blob_store) -> None:
    seeded, run_id = _create_run(repository, seeder, job_offer_id="A-777")
    posting = repository.state.postings[seeded.posting_id]
    posting["publish_status_cache"] = "published"
    posting["last_published_at"] = datetime(2026, 1, 5, tzinfo=timezone.utc)
    posting["freshness_expires_at"] = datetime(2026, 3, 30, tzinfo=timezone.utc)
    content = (
        "job_offer_id\tpublish_status\tlast_published_at\tfreshness_expires_at\n"
        "A-777\tunpublished\t2026-02-25\t2026-03-10\n"
    ).encode()

    summary = asyncio.run(
        ImportReconciler(repository, blob_store).import_export_sync(
            ORG_ID, run_id, user_id=None, file_name="export.tsv", content=content, content_type="text/plain"
        )
    )

    assert summary.matched == 1
    assert posting["job_offer_id"] == "A-777"
    assert posting["publish_status_cache"] == "unpublished"
    assert posting["last_published_at"] == datetime(2026, 2, 25, tzinfo=timezone.utc)
    # the marketplace value wins even when it is earlier than the stored expiry
    assert posting["freshness_expires_at"] == datetime(2026, 3, 10, tzinfo=timezone.utc)


def test_unlinked_create_items_raise_a_link_todo(repository, seeder, blob_store) -> None:
    _, run_id = _create_run(repository, seeder)
    content = "job_offer_id\ttitle\nA-1\tNo match\n".encode()

    asyncio.run(
        ImportReconciler(repository, blob_store).import_export_sync(
            ORG_ID, run_id, user_id=None, file_name="export.txt", content=content, content_type="text/plain"
        )
    )
    todo_types = [todo["type"] for todo in repository.state.todos.values()]
    assert todo_types == ["link_new_job_offer_id"]


def test_missing_todos_table_does_not_fail_import(repository, seeder, blob_store) -> None:
    _, run_id = _create_run(repository, seeder)
    repository.missing_tables.add("todos")

    summary = asyncio.run(
        ImportReconciler(repository, blob_store).import_export_sync(
            ORG_ID, run_id, user_id=None, file_name="export.txt", content=b"job_offer_id\nA-1\n", content_type=""
        )
    )
    assert summary.unmatched == 1
    assert repository.state.todos == {}


def test_export_sync_reads_xlsx(repository, seeder, blob_store) -> None:
    seeded, run_id = _create_run(repository, seeder)
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["job_offer_id", "title", "working_location_id"])
    sheet.append([12345, "Warehouse picker", "LOC-1"])
    buffer = io.BytesIO()
    workbook.save(buffer)

    summary = asyncio.run(
        ImportReconciler(repository, blob_store).import_export_sync(
            ORG_ID, run_id, user_id=None, file_name="export.XLSX", content=buffer.getvalue(), content_type=""
        )
    )
    assert summary.matched == 1
    assert repository.state.postings[seeded.posting_id]["job_offer_id"] == "12345"


def test_scenario_result_import_replaces_previous_errors(repository, seeder, blob_store) -> None:
    seeded, run_id = _create_run(repository, seeder, job_offer_id="A-777")
    item_id = next(iter(repository.state.run_items))
    repository.state.run_items[item_id]["validation_errors"] = {
        "hard_errors": [],
        "warnings": [{"code": "missing_subtitle", "message": "subtitle is empty", "field_key": "subtitle"}],
        "imported": [{"message": "stale error"}],
    }
    reconciler = ImportReconciler(repository, blob_store, clock=lambda: NOW)
    structured = "求人番号\tエラー内容\t項目\nA-777\ttitle is too long\ttitle\n".encode()

    first = asyncio.run(
        reconciler.import_results(
            ORG_ID, run_id, user_id="user-7", file_name="result.txt", content=structured, content_type="text/plain"
        )
    )
    stored = repository.state.run_items[item_id]["validation_errors"]
    assert first.error_count == 1
    assert first.matched_errors == 1
    assert first.affected_items == 1
    assert [entry["message"] for entry in stored["imported"]] == ["title is too long"]
    assert stored["imported"][0]["field_key"] == "title"
    assert stored["imported"][0]["source_file"] == "result.txt"
    assert stored["warnings"][0]["code"] == "missing_subtitle"

    second = asyncio.run(
        reconciler.import_results(
            ORG_ID, run_id, user_id="user-7", file_name="result.txt", content=b"", content_type="text/plain"
        )
    )
    assert second.error_count == 0
    assert repository.state.run_items[item_id]["validation_errors"]["imported"] == []
    todo_types = [todo["type"] for todo in repository.state.todos.values()]
    assert todo_types == ["download_sync"]


def test_result_errors_match_by_offer_id_then_row_then_position() -> None:
    items = [_item(1, "A-1"), _item(2), _item(3)]
    errors = [
        {"message": "by offer", "job_offer_id": "A-1", "row_number": 3},
        {"message": "by row", "job_offer_id": "unknown", "row_number": 2},
        {"message": "out of range", "job_offer_id": None, "row_number": 9},
        {"message": "by position", "job_offer_id": None, "row_number": None},
    ]
    assigned = assign_result_errors(errors, items)
    assert [error["message"] for error in assigned[1]] == ["by offer"]
    assert [error["message"] for error in assigned[2]] == ["by row"]
    # Positional matching is best effort: the fourth error lands on the fourth slot, which does not exist.
    assert 3 not in assigned


def test_positional_fallback_uses_error_index() -> None:
    assigned = assign_result_errors([{"message": "first"}, {"message": "second"}], [_item(10), _item(11)])
    assert assigned == {10: [{"message": "first"}], 11: [{"message": "second"}]}


def test_unstructured_result_lines_become_messages() -> None:
    errors = parse_result_text("line 1 failed\n\nline 2 failed\n", "result.txt")
    assert [error["message"] for error in errors] == ["line 1 failed", "line 2 failed"]
    assert errors[0]["row_number"] is None
    assert errors[0]["source_file"] == "result.txt"


def test_result_zip_reads_stored_and_deflated_text_members() -> None:
    content = _zip(
        {
            "a.txt": ("message\nfirst problem\n".encode(), zipfile.ZIP_STORED),
            "b.txt": ("message\nsecond problem\n".encode(), zipfile.ZIP_DEFLATED),
            "notes.csv": (b"message\nignored\n", zipfile.ZIP_DEFLATED),
        }
    )
    errors = parse_result_upload("results.zip", content)
    assert [(error["message"], error["source_file"]) for error in errors] == [
        ("first problem", "a.txt"),
        ("second problem", "b.txt"),
    ]


def test_unsupported_zip_members_are_skipped() -> None:
    content = _zip(
        {
            "a.txt": (b"message\nkept\n", zipfile.ZIP_DEFLATED),
            "b.txt": (b"message\nskipped\n", zipfile.ZIP_BZIP2),
        }
    )
    assert [name for name, _ in extract_zip_text_members(content)] == ["a.txt"]


def test_malformed_inputs_yield_no_rows() -> None:
    assert parse_result_upload("results.zip", b"not a zip") == []
    assert parse_export_rows("export.xlsx", b"not a workbook") == []
    assert parse_export_rows("export.txt", b"") == []
    assert parse_export_rows("export.txt", b"job_offer_id\n") == []


def test_parse_datetime_accepts_common_shapes() -> None:
    assert parse_datetime("2026-02-20T10:00:00Z") == datetime(2026, 2, 20, 10, tzinfo=timezone.utc)
    assert parse_datetime("2026/02/20") == datetime(2026, 2, 20, tzinfo=timezone.utc)
    assert parse_datetime("soon") is None
    assert parse_datetime(None) is None
