from __future__ import annotations

import asyncio

import pytest

from runops.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from runops.services.revisions import RevisionService, build_draft_payload

ORG_ID = "org-1"

DRAFT = {
    "title": " Warehouse picker ",
    "description": "Pick and pack orders.",
    "working_location_id": "LOC-1",
    "subtitle": "   ",
}


def test_build_draft_payload_trims_and_drops_empty_optionals() -> None:
    payload = build_draft_payload({**DRAFT, "job_type": None, "unexpected": "x"})
    assert payload == {
        "title": "Warehouse picker",
        "description": "Pick and pack orders.",
        "working_location_id": "LOC-1",
    }


def test_create_job_creates_unlinked_posting(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        return await service.create_job(ORG_ID, client_id, "  Night picker ")

    created = asyncio.run(scenario())
    assert created.job.internal_title == "Night picker"
    assert created.posting.job_id == created.job.id
    assert created.posting.channel == "airwork"
    assert created.posting.job_offer_id is None


def test_create_job_rejects_foreign_client(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client(org_id="org-2")
        await RevisionService(repository).create_job(ORG_ID, client_id, "Picker")

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(scenario())


def test_identical_draft_save_is_a_no_op(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        first = await service.save_draft(ORG_ID, created.posting.id, DRAFT)
        second = await service.save_draft(ORG_ID, created.posting.id, dict(DRAFT))
        revisions = await service.list_revisions(ORG_ID, created.posting.id)
        return first, second, revisions

    first, second, revisions = asyncio.run(scenario())
    assert first.changed is True
    assert second.changed is False
    assert second.message == "no changes"
    assert second.revision.id == first.revision.id
    assert len(revisions) == 1


def test_changed_draft_updates_in_place(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        first = await service.save_draft(ORG_ID, created.posting.id, DRAFT)
        second = await service.save_draft(ORG_ID, created.posting.id, {**DRAFT, "subtitle": "Day shift"})
        return first, second

    first, second = asyncio.run(scenario())
    assert second.changed is True
    assert second.revision.id == first.revision.id
    assert second.revision.rev_no == 1
    assert second.revision.payload["subtitle"] == "Day shift"
    assert second.revision.payload_hash != first.revision.payload_hash


def test_draft_rejects_unregistered_location(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client(locations=("LOC-1",))
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        await service.save_draft(ORG_ID, created.posting.id, {**DRAFT, "working_location_id": "LOC-9"})

    with pytest.raises(RepositoryValidationError):
        asyncio.run(scenario())


def test_draft_requires_title_and_description(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        await service.save_draft(ORG_ID, created.posting.id, {"title": "Picker", "description": "  "})

    with pytest.raises(RepositoryValidationError):
        asyncio.run(scenario())


def test_rev_numbers_keep_increasing_after_cancel(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        first = await service.save_draft(ORG_ID, created.posting.id, DRAFT)
        await service.cancel(ORG_ID, first.revision.id)
        second = await service.save_draft(ORG_ID, created.posting.id, DRAFT)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.revision.rev_no == 1
    assert second.changed is True
    assert second.revision.id != first.revision.id
    assert second.revision.rev_no == 2


def test_review_and_approve_flow(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        draft = await service.save_draft(ORG_ID, created.posting.id, DRAFT)
        in_review = await service.submit_for_review(ORG_ID, draft.revision.id)
        approved = await service.approve(ORG_ID, draft.revision.id, "user-7")
        return in_review, approved

    in_review, approved = asyncio.run(scenario())
    assert in_review.status == "in_review"
    assert approved.status == "approved"
    assert approved.approved_by == "user-7"
    assert approved.approved_at is not None


def test_second_approve_is_a_conflict(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        draft = await service.save_draft(ORG_ID, created.posting.id, DRAFT)
        await service.approve(ORG_ID, draft.revision.id, "user-7")
        await service.approve(ORG_ID, draft.revision.id, "user-8")

    with pytest.raises(RepositoryConflictError):
        asyncio.run(scenario())


def test_transition_of_unknown_or_foreign_revision_is_not_found(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        draft = await service.save_draft(ORG_ID, created.posting.id, DRAFT)
        await service.approve("org-2", draft.revision.id, "user-7")

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(scenario())


def test_apply_proposal_creates_approved_ai_revision(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        seeded = await seeder.approved_job(client_id)
        service = RevisionService(repository)
        revision = await service.apply_proposal(
            ORG_ID,
            seeded.posting_id,
            [
                {"field_key": "title", "after": "Senior picker"},
                {"field_key": "working_location_id", "after": "LOC-2"},
            ],
            approver_id="user-7",
            proposal_id="proposal-1",
        )
        return seeded, revision

    seeded, revision = asyncio.run(scenario())
    assert revision.source == "ai"
    assert revision.status == "approved"
    assert revision.rev_no == 2
    assert revision.payload["title"] == "Senior picker"
    assert revision.payload["working_location_id"] == "LOC-1"
    audit = repository.state.audit_logs[-1]
    assert audit["action"] == "apply_ai_proposal"
    assert audit["payload"]["proposal_id"] == "proposal-1"
    assert audit["payload"]["field_keys"] == ["title"]


def test_apply_proposal_needs_an_approved_baseline(repository, seeder) -> None:
    async def scenario():
        client_id = await seeder.client()
        service = RevisionService(repository)
        created = await service.create_job(ORG_ID, client_id, "Picker")
        await service.apply_proposal(
            ORG_ID,
            created.posting.id,
            [{"field_key": "title", "after": "Senior picker"}],
            approver_id="user-7",
        )

    with pytest.raises(RepositoryConflictError):
        asyncio.run(scenario())
