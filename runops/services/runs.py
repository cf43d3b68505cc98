import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from runops.services.repository import (
    PipelineRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositorySchemaMissingError,
    RepositoryValidationError,
    RunItemRecord,
    RunRecord,
)
from runops.services.validation import (
    RunValidationSummary,
    ValidationMasters,
    read_imported_errors,
    validate_item,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RUN_TYPES = frozenset({"update", "refresh"})
FILE_FORMATS = frozenset({"xlsx", "txt"})

# Allowed source statuses for each operator-driven status change.
STATUS_TRANSITIONS: dict[str, set[str]] = {
    "executing": {"draft", "file_generated"},
    "done": {"file_generated", "executing"},
    "failed": {"draft", "file_generated", "executing"},
}


@dataclass(slots=True)
class RunCreated:
    run_id: int
    item_count: int


class RunBlockedError(RepositoryConflictError):
    """Hard validation errors block file generation."""

    def __init__(self, summary: RunValidationSummary) -> None:
        super().__init__(f"run has {summary.hard_error_count} hard validation errors")
        self.summary = summary


async def load_validation_masters(unit: Any, org_id: str, client_id: str) -> ValidationMasters:
    masters = ValidationMasters()
    try:
        masters.location_ids = await unit.list_location_ids(org_id, client_id)
    except RepositorySchemaMissingError:
        logger.warning("location master missing; treating as empty")
    try:
        masters.job_type_codes = await unit.list_active_codes("job_type")
    except RepositorySchemaMissingError:
        logger.warning("code master missing; treating as empty")
    try:
        masters.field_keys = set(await unit.list_field_keys())
    except RepositorySchemaMissingError:
        logger.warning("field master missing; treating as empty")
    return masters


def validate_items(items: list[RunItemRecord], masters: ValidationMasters) -> RunValidationSummary:
    summary = RunValidationSummary()
    for item in items:
        result = validate_item(
            item.payload,
            action=item.action,
            posting_job_offer_id=item.job_offer_id,
            masters=masters,
            run_item_id=item.id,
        )
        result.imported = read_imported_errors(item.validation)
        summary.items.append(result)
    return summary


class RunService:
    def __init__(self, repository: PipelineRepository, channel: str = "airwork") -> None:
        self.repository = repository
        self.channel = channel

    async def create_run(
        self,
        org_id: str,
        client_id: str,
        *,
        run_type: str = "update",
        file_format: str = "xlsx",
        include_latest_approved_only: bool = True,
    ) -> RunCreated:
        if run_type not in RUN_TYPES:
            raise RepositoryValidationError(f"unsupported run_type: {run_type}")
        if file_format not in FILE_FORMATS:
            raise RepositoryValidationError(f"unsupported file_format: {file_format}")

        with tracer.start_as_current_span("runs.create") as span:
            async with self.repository.transaction() as unit:
                if not await unit.client_exists(org_id, client_id):
                    raise RepositoryNotFoundError("client not found")
                run = await unit.insert_run(
                    org_id=org_id,
                    client_id=client_id,
                    run_type=run_type,
                    file_format=file_format,
                )
                candidates = await unit.list_run_candidates(
                    org_id=org_id,
                    client_id=client_id,
                    channel=self.channel,
                    latest_approved_only=include_latest_approved_only,
                )
                for candidate in candidates:
                    await unit.insert_run_item(
                        run_id=run.id,
                        posting_id=candidate.job_posting_id,
                        revision_id=candidate.approved_revision_id,
                        action="update" if candidate.job_offer_id else "create",
                    )
            span.set_attribute("runops.run_id", run.id)
            span.set_attribute("runops.item_count", len(candidates))

        logger.info("run created run_id=%s client_id=%s items=%s", run.id, client_id, len(candidates))
        return RunCreated(run_id=run.id, item_count=len(candidates))

    async def list_runs(self, org_id: str) -> list[RunRecord]:
        try:
            async with self.repository.session() as unit:
                return await unit.list_runs(org_id)
        except RepositorySchemaMissingError:
            logger.warning("runs table missing; returning empty run list")
            return []

    async def get_run(self, org_id: str, run_id: int) -> RunRecord:
        async with self.repository.session() as unit:
            return await self._require_run(unit, org_id, run_id)

    async def list_items(self, org_id: str, run_id: int) -> list[RunItemRecord]:
        async with self.repository.session() as unit:
            await self._require_run(unit, org_id, run_id)
            return await unit.list_run_items(run_id)

    async def preview(self, org_id: str, run_id: int) -> RunValidationSummary:
        async with self.repository.session() as unit:
            run = await self._require_run(unit, org_id, run_id)
            items = await unit.list_run_items(run.id)
            masters = await load_validation_masters(unit, org_id, run.client_id)
        return validate_items(items, masters)

    async def validate_run(self, org_id: str, run_id: int) -> RunValidationSummary:
        summary = await self.preview(org_id, run_id)
        if summary.items:
            async with self.repository.transaction() as unit:
                for result in summary.items:
                    await unit.set_run_item_validation(result.run_item_id, result.to_stored())
        logger.info(
            "run validated run_id=%s hard_errors=%s warnings=%s",
            run_id,
            summary.hard_error_count,
            summary.warning_count,
        )
        return summary

    async def update_status(self, org_id: str, run_id: int, status: str) -> RunRecord:
        allowed_from = STATUS_TRANSITIONS.get(status)
        if allowed_from is None:
            raise RepositoryValidationError(f"unsupported run status: {status}")

        async with self.repository.transaction() as unit:
            run = await self._require_run(unit, org_id, run_id)
            updated = await unit.set_run_status(
                org_id=org_id,
                run_id=run.id,
                status=status,
                from_statuses=allowed_from,
            )
            if not updated:
                raise RepositoryConflictError(f"run is {run.status}; cannot move to {status}")
            run = await self._require_run(unit, org_id, run_id)

        logger.info("run status updated run_id=%s status=%s", run.id, run.status)
        return run

    async def download_url(self, org_id: str, run_id: int) -> str:
        run = await self.get_run(org_id, run_id)
        if not run.file_blob_url:
            raise RepositoryNotFoundError("run file has not been generated")
        return run.file_blob_url

    @staticmethod
    async def _require_run(unit: Any, org_id: str, run_id: int) -> RunRecord:
        run = await unit.get_run(org_id, run_id)
        if run is None:
            raise RepositoryNotFoundError("run not found")
        return run


