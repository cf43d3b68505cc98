from dataclasses import asdict

from fastapi import APIRouter, Depends, status

from runops.api.deps import repository_errors, require_org
from runops.core.config import get_settings
from runops.core.security import get_human_principal
from runops.schemas.jobs import (
    DraftSaveRequest,
    JobCreateOut,
    JobCreateRequest,
    ProposalApplyRequest,
    RevisionActionOut,
    RevisionOut,
)
from runops.services.repository import get_repository
from runops.services.revisions import RevisionService

router = APIRouter()


def get_revision_service(repository=Depends(get_repository)) -> RevisionService:
    return RevisionService(repository, channel=get_settings().channel)


@router.post("/jobs", response_model=JobCreateOut, status_code=status.HTTP_201_CREATED)
async def create_job(
    payload: JobCreateRequest,
    principal=Depends(get_human_principal),
    service: RevisionService = Depends(get_revision_service),
) -> JobCreateOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        created = await service.create_job(org_id, payload.client_id, payload.internal_title)
    return JobCreateOut(message="job created", job_id=created.job.id, posting_id=created.posting.id)


@router.get("/postings/{posting_id}/revisions", response_model=list[RevisionOut])
async def list_revisions(
    posting_id: str,
    principal=Depends(get_human_principal),
    service: RevisionService = Depends(get_revision_service),
) -> list[RevisionOut]:
    org_id = require_org(principal, {"pipeline:read"})
    with repository_errors():
        revisions = await service.list_revisions(org_id, posting_id)
    return [RevisionOut(**asdict(revision)) for revision in revisions]


@router.post("/postings/{posting_id}/drafts", response_model=RevisionActionOut)
async def save_draft(
    posting_id: str,
    payload: DraftSaveRequest,
    principal=Depends(get_human_principal),
    service: RevisionService = Depends(get_revision_service),
) -> RevisionActionOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        result = await service.save_draft(org_id, posting_id, payload.model_dump())
    return RevisionActionOut(
        message=result.message,
        changed=result.changed,
        revision=RevisionOut(**asdict(result.revision)),
    )


@router.post("/postings/{posting_id}/proposals/apply", response_model=RevisionActionOut)
async def apply_proposal(
    posting_id: str,
    payload: ProposalApplyRequest,
    principal=Depends(get_human_principal),
    service: RevisionService = Depends(get_revision_service),
) -> RevisionActionOut:
    org_id = require_org(principal, {"pipeline:write"})
    changes = [change.model_dump() for change in payload.changes]
    with repository_errors():
        revision = await service.apply_proposal(
            org_id,
            posting_id,
            changes,
            approver_id=principal.actor_id or principal.subject,
            proposal_id=payload.proposal_id,
        )
    return RevisionActionOut(message="proposal applied", revision=RevisionOut(**asdict(revision)))


@router.post("/revisions/{revision_id}/submit", response_model=RevisionActionOut)
async def submit_revision(
    revision_id: str,
    principal=Depends(get_human_principal),
    service: RevisionService = Depends(get_revision_service),
) -> RevisionActionOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        revision = await service.submit_for_review(org_id, revision_id)
    return RevisionActionOut(message="submitted for review", revision=RevisionOut(**asdict(revision)))


@router.post("/revisions/{revision_id}/approve", response_model=RevisionActionOut)
async def approve_revision(
    revision_id: str,
    principal=Depends(get_human_principal),
    service: RevisionService = Depends(get_revision_service),
) -> RevisionActionOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        revision = await service.approve(org_id, revision_id, principal.actor_id or principal.subject)
    return RevisionActionOut(message="revision approved", revision=RevisionOut(**asdict(revision)))


@router.post("/revisions/{revision_id}/cancel", response_model=RevisionActionOut)
async def cancel_revision(
    revision_id: str,
    principal=Depends(get_human_principal),
    service: RevisionService = Depends(get_revision_service),
) -> RevisionActionOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        revision = await service.cancel(org_id, revision_id)
    return RevisionActionOut(message="revision canceled", revision=RevisionOut(**asdict(revision)))
