from __future__ import annotations

import asyncio
import hashlib
import io
from datetime import datetime, timezone

import pytest
from openpyxl import load_workbook

from runops.services.exporter import (
    BASE_COLUMNS,
    FileGenerator,
    build_columns,
    render_tsv,
    render_xlsx,
)
from runops.services.repository import RepositoryConflictError, RunItemRecord
from runops.services.runs import RunBlockedError, RunService


ORG_ID = "org-1"
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _item(payload: dict[str, str], *, job_offer_id: str | None = None) -> RunItemRecord:
    return RunItemRecord(
        id=1,
        run_id=1,
        job_posting_id="posting-1",
        job_revision_id="revision-1",
        action="update" if job_offer_id else "create",
        job_id="job-1",
        job_title="Picker",
        job_offer_id=job_offer_id,
        payload=payload,
    )


def test_scenario_generated_file_renders_approved_payload(repository, seeder, blob_store) -> None:
    async def scenario():
        client_id = await seeder.client()
        await seeder.approved_job(
            client_id,
            payload={"title": "Picker", "description": "Pick orders.", "working_location_id": "LOC-1"},
        )
        run = await RunService(repository).create_run(ORG_ID, client_id, file_format="txt")
        generated = await FileGenerator(repository, blob_store, clock=lambda: NOW).generate(ORG_ID, run.run_id)
        stored_run = await RunService(repository).get_run(ORG_ID, run.run_id)
        return generated, stored_run

    generated, stored_run = asyncio.run(scenario())
    content, content_type = blob_store.objects[generated.file_name]
    lines = content.decode("utf-8").splitlines()
    header = lines[0].split("\t")
    row = dict(zip(header, lines[1].split("\t")))

    assert header == list(BASE_COLUMNS)
    assert row["job_offer_id"] == ""
    assert row["title"] == "Picker"
    assert row["description"] == "Pick orders."
    assert content_type.startswith("text/tab-separated-values")
    assert generated.file_name == f"runs/run-{stored_run.id}-2026-03-02T09-30-00-000000Z.txt"
    assert generated.sha256 == hashlib.sha256(content).hexdigest()
    assert stored_run.status == "file_generated"
    assert stored_run.file_blob_url == generated.blob_url
    assert stored_run.file_sha256 == generated.sha256


def test_hard_errors_block_generation(repository, seeder, blob_store) -> None:
    async def scenario():
        client_id = await seeder.client()
        await seeder.approved_job(client_id, job_offer_id=None, payload={"title": "Picker", "description": ""})
        run = await RunService(repository).create_run(ORG_ID, client_id)
        await FileGenerator(repository, blob_store).generate(ORG_ID, run.run_id)

    with pytest.raises(RunBlockedError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.summary.hard_error_count == 1
    assert blob_store.objects == {}


def test_empty_run_cannot_generate(repository, seeder, blob_store) -> None:
    async def scenario():
        client_id = await seeder.client()
        run = await RunService(repository).create_run(ORG_ID, client_id)
        await FileGenerator(repository, blob_store).generate(ORG_ID, run.run_id)

    with pytest.raises(RepositoryConflictError, match="no items"):
        asyncio.run(scenario())


def test_tsv_flattens_tabs_and_line_breaks() -> None:
    content = render_tsv(["title", "description"], [["Pick\tpack", "line one\r\nline two\nthree\rfour"]])
    assert content.decode("utf-8") == "title\tdescription\nPick pack\tline one line two three four\n"


def test_columns_append_known_master_fields_present_in_payloads() -> None:
    items = [_item({"title": "Picker", "salary": "1200", "bonus": "yes"})]
    columns = build_columns(items, ["title", "salary", "holidays"])
    assert columns == [*BASE_COLUMNS, "salary"]


def test_xlsx_cells_are_text_and_formulas_stay_literal() -> None:
    content = render_xlsx(["job_offer_id", "title"], [["00123", "=SUM(A1:A2)"]])
    workbook = load_workbook(io.BytesIO(content))
    sheet = workbook.active

    assert sheet.title == "airwork"
    assert sheet["A1"].value == "job_offer_id"
    assert sheet["A1"].font.bold is True
    assert sheet["A2"].value == "00123"
    assert sheet["A2"].number_format == "@"
    assert sheet["B2"].value == "=SUM(A1:A2)"
    assert sheet["B2"].data_type == "s"
