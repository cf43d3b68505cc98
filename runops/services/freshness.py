import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace

from runops.services.repository import PipelineRepository, StalePostingRecord
from runops.services.todos import ensure_todo

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

REUSABLE_RUN_STATUSES = frozenset({"draft", "file_generated", "executing"})


@dataclass(slots=True)
class FreshnessSummary:
    processed_postings: int = 0
    created_postings: int = 0
    created_runs: int = 0
    created_todos: int = 0
    skipped_already_planned: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class _OrgSummary(FreshnessSummary):
    posting_ids: list[str] = field(default_factory=list)
    created_posting_ids: list[str] = field(default_factory=list)
    run_ids: list[int] = field(default_factory=list)
    todo_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _RefreshItem:
    org_id: str
    client_id: str
    job_id: str
    posting_id: str
    revision_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FreshnessScanner:
    """Flags stale postings and plans refresh runs; the whole sweep is one transaction."""

    def __init__(
        self,
        repository: PipelineRepository,
        *,
        channel: str = "airwork",
        stale_after_days: int = 14,
        recent_posting_days: int = 7,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.channel = channel
        self.stale_after_days = stale_after_days
        self.recent_posting_days = recent_posting_days
        self.clock = clock

    async def run(self, now: datetime | None = None) -> FreshnessSummary:
        now = now or self.clock()
        summary = FreshnessSummary()
        org_summaries: dict[str, _OrgSummary] = {}

        def bump(org_id: str, counter: str, amount: int = 1) -> _OrgSummary:
            org_summary = org_summaries.setdefault(org_id, _OrgSummary())
            setattr(summary, counter, getattr(summary, counter) + amount)
            setattr(org_summary, counter, getattr(org_summary, counter) + amount)
            return org_summary

        with tracer.start_as_current_span("freshness.sweep") as span:
            async with self.repository.transaction() as unit:
                stale = await unit.list_stale_postings(
                    channel=self.channel,
                    now=now,
                    stale_after_days=self.stale_after_days,
                )
                refresh_items: list[_RefreshItem] = []
                for posting in stale:
                    bump(posting.org_id, "processed_postings").posting_ids.append(posting.posting_id)
                    item = await self._plan_posting(unit, posting, now, bump)
                    if item is not None:
                        refresh_items.append(item)

                grouped: dict[tuple[str, str], list[_RefreshItem]] = {}
                for item in refresh_items:
                    grouped.setdefault((item.org_id, item.client_id), []).append(item)
                for (org_id, client_id), items in grouped.items():
                    await self._schedule_client_run(unit, org_id, client_id, items, now, bump)

                for org_id, org_summary in org_summaries.items():
                    await unit.insert_audit_log(
                        org_id=org_id,
                        action="cron_freshness",
                        payload=asdict(org_summary),
                        created_by=None,
                    )

            span.set_attribute("runops.processed_postings", summary.processed_postings)
            span.set_attribute("runops.created_runs", summary.created_runs)

        logger.info(
            "freshness sweep processed=%s created_postings=%s created_runs=%s created_todos=%s skipped=%s",
            summary.processed_postings,
            summary.created_postings,
            summary.created_runs,
            summary.created_todos,
            summary.skipped_already_planned,
        )
        return summary

    async def _plan_posting(
        self,
        unit: Any,
        posting: StalePostingRecord,
        now: datetime,
        bump: Callable[..., _OrgSummary],
    ) -> _RefreshItem | None:
        await unit.mark_refresh_candidate(posting.posting_id, now=now, stale_after_days=self.stale_after_days)

        for todo_type in ("airwork_unpublish", "airwork_republish"):
            todo_id = await ensure_todo(
                unit,
                org_id=posting.org_id,
                todo_type=todo_type,
                client_id=posting.client_id,
                job_id=posting.job_id,
            )
            if todo_id:
                bump(posting.org_id, "created_todos").todo_ids.append(todo_id)

        baseline = await unit.get_current_approved(posting.posting_id)
        if baseline is None:
            bump(posting.org_id, "skipped_already_planned")
            return None

        refresh_posting_id: str | None = None
        sibling = await unit.find_unlinked_sibling_posting(
            job_id=posting.job_id,
            channel=self.channel,
            exclude_posting_id=posting.posting_id,
        )
        if sibling is not None:
            if await unit.run_item_exists(posting_id=sibling.id):
                bump(posting.org_id, "skipped_already_planned")
                return None
            recent_cutoff = now - timedelta(days=self.recent_posting_days)
            if sibling.created_at is not None and sibling.created_at >= recent_cutoff:
                refresh_posting_id = sibling.id

        if refresh_posting_id is None:
            created = await unit.insert_posting(posting.job_id, self.channel)
            refresh_posting_id = created.id
            bump(posting.org_id, "created_postings").created_posting_ids.append(created.id)

        revision = await unit.get_current_approved(refresh_posting_id)
        if revision is None:
            revision = await unit.insert_revision(
                refresh_posting_id,
                source="system",
                status="approved",
                payload=baseline.payload,
                payload_hash=baseline.payload_hash,
            )

        if await unit.run_item_exists(posting_id=refresh_posting_id, action="create"):
            bump(posting.org_id, "skipped_already_planned")
            return None

        return _RefreshItem(
            org_id=posting.org_id,
            client_id=posting.client_id,
            job_id=posting.job_id,
            posting_id=refresh_posting_id,
            revision_id=revision.id,
        )

    async def _schedule_client_run(
        self,
        unit: Any,
        org_id: str,
        client_id: str,
        items: list[_RefreshItem],
        now: datetime,
        bump: Callable[..., _OrgSummary],
    ) -> None:
        day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        run_id = await unit.find_refresh_run(
            org_id=org_id,
            client_id=client_id,
            statuses=set(REUSABLE_RUN_STATUSES),
            day_start=day_start,
            day_end=day_start + timedelta(days=1),
        )
        if run_id is None:
            run = await unit.insert_run(
                org_id=org_id,
                client_id=client_id,
                run_type="refresh",
                file_format="xlsx",
            )
            run_id = run.id
            bump(org_id, "created_runs").run_ids.append(run_id)

        for item in items:
            if await unit.run_item_exists(posting_id=item.posting_id, run_id=run_id, action="create"):
                bump(org_id, "skipped_already_planned")
                continue
            await unit.insert_run_item(
                run_id=run_id,
                posting_id=item.posting_id,
                revision_id=item.revision_id,
                action="create",
            )

        for todo_type in ("airwork_upload_file", "airwork_download_sync", "airwork_link_new_job_offer_id"):
            todo_id = await ensure_todo(unit, org_id=org_id, todo_type=todo_type, client_id=client_id, run_id=run_id)
            if todo_id:
                bump(org_id, "created_todos").todo_ids.append(todo_id)
