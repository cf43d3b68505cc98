import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from runops.services.canonical import payload_hash
from runops.services.repository import (
    JobRecord,
    PipelineRepository,
    PostingRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    RevisionRecord,
)

logger = logging.getLogger(__name__)

DRAFT_FIELDS = ("title", "subtitle", "description", "working_location_id", "job_type", "occupation_id")
PROPOSAL_EDITABLE_FIELDS = frozenset({"title", "subtitle", "description", "job_type"})


@dataclass(slots=True)
class DraftSaveResult:
    revision: RevisionRecord
    changed: bool
    message: str


@dataclass(slots=True)
class CreatedJob:
    job: JobRecord
    posting: PostingRecord


def build_draft_payload(fields: Mapping[str, Any]) -> dict[str, str]:
    """Trimmed payload; empty optional values are omitted."""
    payload: dict[str, str] = {}
    for key in DRAFT_FIELDS:
        value = fields.get(key)
        if not isinstance(value, str):
            continue
        stripped = value.strip()
        if stripped:
            payload[key] = stripped
    return payload


class RevisionService:
    def __init__(self, repository: PipelineRepository, channel: str = "airwork") -> None:
        self.repository = repository
        self.channel = channel

    async def create_job(self, org_id: str, client_id: str, internal_title: str) -> CreatedJob:
        title = internal_title.strip()
        if not title:
            raise RepositoryValidationError("internal_title is required")

        async with self.repository.transaction() as unit:
            if not await unit.client_exists(org_id, client_id):
                raise RepositoryNotFoundError("client not found")
            job = await unit.insert_job(org_id, client_id, title)
            posting = await unit.insert_posting(job.id, self.channel)

        logger.info("job created job_id=%s posting_id=%s", job.id, posting.id)
        return CreatedJob(job=job, posting=posting)

    async def list_revisions(self, org_id: str, posting_id: str) -> list[RevisionRecord]:
        async with self.repository.session() as unit:
            await self._get_owned_posting(unit, org_id, posting_id)
            return await unit.list_revisions(posting_id)

    async def save_draft(self, org_id: str, posting_id: str, fields: Mapping[str, Any]) -> DraftSaveResult:
        payload = build_draft_payload(fields)
        if "title" not in payload or "description" not in payload:
            raise RepositoryValidationError("title and description are required")
        digest = payload_hash(payload)

        async with self.repository.transaction() as unit:
            posting = await self._get_owned_posting(unit, org_id, posting_id)
            await unit.lock_posting(posting.id)

            location_id = payload.get("working_location_id")
            if location_id and not await unit.location_belongs_to_client(org_id, posting.client_id, location_id):
                raise RepositoryValidationError("working_location_id is not registered for the posting's client")

            draft = await unit.get_latest_draft(posting.id)
            if draft is not None and draft.payload_hash == digest:
                return DraftSaveResult(revision=draft, changed=False, message="no changes")

            if draft is not None:
                revision = await unit.update_revision_payload(draft.id, payload, digest)
                if revision is None:
                    raise RepositoryConflictError("draft changed state during save")
            else:
                revision = await unit.insert_revision(
                    posting.id,
                    source="manual",
                    status="draft",
                    payload=payload,
                    payload_hash=digest,
                )

        logger.info("draft saved posting_id=%s revision_id=%s rev_no=%s", posting.id, revision.id, revision.rev_no)
        return DraftSaveResult(revision=revision, changed=True, message="draft saved")

    async def submit_for_review(self, org_id: str, revision_id: str) -> RevisionRecord:
        return await self._transition(org_id, revision_id, {"draft"}, "in_review")

    async def approve(self, org_id: str, revision_id: str, approver_id: str) -> RevisionRecord:
        return await self._transition(org_id, revision_id, {"draft", "in_review"}, "approved", approver_id)

    async def cancel(self, org_id: str, revision_id: str) -> RevisionRecord:
        return await self._transition(org_id, revision_id, {"draft", "in_review"}, "canceled")

    async def apply_proposal(
        self,
        org_id: str,
        posting_id: str,
        changes: Iterable[Mapping[str, Any]],
        approver_id: str,
        proposal_id: str | None = None,
    ) -> RevisionRecord:
        accepted = [
            change
            for change in changes
            if change.get("field_key") in PROPOSAL_EDITABLE_FIELDS and isinstance(change.get("after"), str)
        ]
        if not accepted:
            raise RepositoryValidationError("no applicable changes selected")

        async with self.repository.transaction() as unit:
            posting = await self._get_owned_posting(unit, org_id, posting_id)
            await unit.lock_posting(posting.id)
            baseline = await unit.get_current_approved(posting.id)
            if baseline is None:
                raise RepositoryConflictError("posting has no approved revision")

            payload = dict(baseline.payload)
            for change in accepted:
                payload[change["field_key"]] = change["after"]

            revision = await unit.insert_revision(
                posting.id,
                source="ai",
                status="approved",
                payload=payload,
                payload_hash=payload_hash(payload),
                approved_by=approver_id,
            )
            await unit.insert_audit_log(
                org_id=org_id,
                action="apply_ai_proposal",
                payload={
                    "proposal_id": proposal_id,
                    "posting_id": posting.id,
                    "revision_id": revision.id,
                    "field_keys": sorted({change["field_key"] for change in accepted}),
                },
                created_by=approver_id,
            )

        logger.info("proposal applied posting_id=%s revision_id=%s", posting.id, revision.id)
        return revision

    async def _transition(
        self,
        org_id: str,
        revision_id: str,
        from_statuses: set[str],
        to_status: str,
        approver_id: str | None = None,
    ) -> RevisionRecord:
        async with self.repository.transaction() as unit:
            revision = await unit.transition_revision(
                org_id,
                revision_id,
                from_statuses=from_statuses,
                to_status=to_status,
                approved_by=approver_id,
            )
            if revision is None:
                current = await unit.get_revision(org_id, revision_id)
                if current is None:
                    raise RepositoryNotFoundError("revision not found")
                raise RepositoryConflictError(f"revision is {current.status}; cannot move to {to_status}")

        logger.info("revision transitioned revision_id=%s status=%s", revision.id, revision.status)
        return revision

    @staticmethod
    async def _get_owned_posting(unit: Any, org_id: str, posting_id: str) -> PostingRecord:
        posting = await unit.get_posting(posting_id)
        if posting is None or posting.org_id != org_id:
            raise RepositoryNotFoundError("job posting not found")
        return posting
