import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
import uuid

from opentelemetry import trace

from runops.services.blob import BlobStore
from runops.services.parsing import parse_datetime, parse_export_rows, parse_result_upload
from runops.services.repository import PipelineRepository, RepositoryNotFoundError, RunItemRecord, RunRecord
from runops.services.todos import ensure_todo_best_effort
from runops.services.validation import resolve_job_offer_id

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class ExportSyncSummary:
    matched: int
    updated: int
    unmatched: int
    blob_url: str | None


@dataclass(slots=True)
class ResultImportSummary:
    error_count: int
    matched_errors: int
    affected_items: int
    blob_url: str | None


def build_fingerprint(title: str, working_location_id: str) -> str:
    return f"{title.strip()}::{working_location_id.strip()}".lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_value(row: Mapping[str, str | None], key: str) -> str | None:
    value = row.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def assign_result_errors(
    errors: list[dict[str, Any]],
    items: list[RunItemRecord],
) -> dict[int, list[dict[str, Any]]]:
    """Tie each error to a run item: offer id, then stated row number, then list position.

    Positional tiers assume item order is unchanged since the file was generated.
    """
    by_offer_id: dict[str, int] = {}
    for item in items:
        offer_id = resolve_job_offer_id(item.payload, item.job_offer_id)
        if offer_id:
            by_offer_id.setdefault(offer_id, item.id)

    assigned: dict[int, list[dict[str, Any]]] = {}
    for index, error in enumerate(errors):
        offer_id = error.get("job_offer_id")
        row_number = error.get("row_number")
        item_id: int | None = None
        if offer_id and offer_id in by_offer_id:
            item_id = by_offer_id[offer_id]
        elif row_number:
            if 0 < row_number <= len(items):
                item_id = items[row_number - 1].id
        elif index < len(items):
            item_id = items[index].id
        if item_id is not None:
            assigned.setdefault(item_id, []).append(error)
    return assigned


class ImportReconciler:
    def __init__(
        self,
        repository: PipelineRepository,
        blob_store: BlobStore,
        channel: str = "airwork",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.blob_store = blob_store
        self.channel = channel
        self.clock = clock

    async def import_export_sync(
        self,
        org_id: str,
        run_id: int,
        *,
        user_id: str | None,
        file_name: str,
        content: bytes,
        content_type: str,
    ) -> ExportSyncSummary:
        with tracer.start_as_current_span("imports.export_sync") as span:
            span.set_attribute("runops.run_id", run_id)
            run = await self._require_run(org_id, run_id)
            rows = parse_export_rows(file_name, content)
            blob_url = await self._archive(run.id, file_name, content, content_type)

            matched = updated = unmatched = 0
            async with self.repository.transaction() as unit:
                postings = await unit.list_client_approved_postings(
                    org_id=org_id,
                    client_id=run.client_id,
                    channel=self.channel,
                )
                by_offer_id: dict[str, str] = {}
                by_fingerprint: dict[str, str] = {}
                for posting in postings:
                    if posting.job_offer_id:
                        by_offer_id[posting.job_offer_id] = posting.job_posting_id
                    title = posting.payload.get("title")
                    location_id = posting.payload.get("working_location_id")
                    if title and location_id:
                        by_fingerprint[build_fingerprint(title, location_id)] = posting.job_posting_id

                for row in rows:
                    offer_id = _row_value(row, "job_offer_id")
                    title = _row_value(row, "title")
                    location_id = _row_value(row, "working_location_id")

                    posting_id: str | None = None
                    if offer_id and offer_id in by_offer_id:
                        posting_id = by_offer_id[offer_id]
                    elif title and location_id:
                        posting_id = by_fingerprint.get(build_fingerprint(title, location_id))

                    if posting_id is None:
                        unmatched += 1
                        continue

                    matched += 1
                    updated += await unit.merge_posting_import(
                        posting_id,
                        job_offer_id=offer_id,
                        publish_status=_row_value(row, "publish_status_cache"),
                        last_published_at=parse_datetime(_row_value(row, "last_published_at")),
                        freshness_expires_at=parse_datetime(_row_value(row, "freshness_expires_at")),
                    )

                await unit.insert_audit_log(
                    org_id=org_id,
                    action="import_airwork_export",
                    payload={
                        "run_id": run.id,
                        "file_name": file_name,
                        "blob_url": blob_url,
                        "matched": matched,
                        "updated": updated,
                        "unmatched": unmatched,
                    },
                    created_by=user_id,
                )

            async with self.repository.session() as unit:
                unlinked = await unit.count_unlinked_create_items(run.id)
            if unlinked:
                await ensure_todo_best_effort(
                    self.repository,
                    org_id=org_id,
                    todo_type="link_new_job_offer_id",
                    client_id=run.client_id,
                    run_id=run.id,
                )

        logger.info(
            "export sync imported run_id=%s rows=%s matched=%s updated=%s unmatched=%s",
            run.id,
            len(rows),
            matched,
            updated,
            unmatched,
        )
        return ExportSyncSummary(matched=matched, updated=updated, unmatched=unmatched, blob_url=blob_url)

    async def import_results(
        self,
        org_id: str,
        run_id: int,
        *,
        user_id: str | None,
        file_name: str,
        content: bytes,
        content_type: str,
    ) -> ResultImportSummary:
        with tracer.start_as_current_span("imports.results") as span:
            span.set_attribute("runops.run_id", run_id)
            run = await self._require_run(org_id, run_id)
            errors = parse_result_upload(file_name, content)
            blob_url = await self._archive(run.id, file_name, content, content_type)

            async with self.repository.transaction() as unit:
                items = await unit.list_run_items(run.id)
                assigned = assign_result_errors(errors, items)
                # A new upload fully replaces earlier imported errors on every item.
                for item in items:
                    stored = dict(item.validation) if isinstance(item.validation, Mapping) else {}
                    stored["imported"] = assigned.get(item.id, [])
                    await unit.set_run_item_validation(item.id, stored)

                await unit.insert_audit_log(
                    org_id=org_id,
                    action="import_airwork_results",
                    payload={
                        "run_id": run.id,
                        "file_name": file_name,
                        "blob_url": blob_url,
                        "error_count": len(errors),
                    },
                    created_by=user_id,
                )

            if errors:
                await ensure_todo_best_effort(
                    self.repository,
                    org_id=org_id,
                    todo_type="download_sync",
                    client_id=run.client_id,
                    run_id=run.id,
                )

        matched_errors = sum(len(entries) for entries in assigned.values())
        logger.info(
            "result file imported run_id=%s errors=%s matched=%s items=%s",
            run.id,
            len(errors),
            matched_errors,
            len(assigned),
        )
        return ResultImportSummary(
            error_count=len(errors),
            matched_errors=matched_errors,
            affected_items=len(assigned),
            blob_url=blob_url,
        )

    async def _require_run(self, org_id: str, run_id: int) -> RunRecord:
        async with self.repository.session() as unit:
            run = await unit.get_run(org_id, run_id)
        if run is None:
            raise RepositoryNotFoundError("run not found")
        return run

    async def _archive(self, run_id: int, file_name: str, content: bytes, content_type: str) -> str:
        timestamp = int(self.clock().timestamp() * 1000)
        safe_name = file_name.replace("/", "_").replace("\\", "_") or "upload"
        stored = await self.blob_store.put(
            f"runs/{run_id}/imports/{timestamp}-{uuid.uuid4().hex[:8]}-{safe_name}",
            content,
            content_type or "application/octet-stream",
        )
        return stored.url
