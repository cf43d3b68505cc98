from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from runops.services.blob import InMemoryBlobStore
from runops.services.canonical import payload_hash
from runops.services.store import InMemoryRepository

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
ORG_ID = "org-1"
APPROVER_ID = "user-approver"


@dataclass
class SeededJob:
    client_id: str
    job_id: str
    posting_id: str
    revision_id: str


class PipelineSeeder:
    """Writes fixture rows straight through the in-memory unit primitives."""

    def __init__(self, repository: InMemoryRepository) -> None:
        self.repository = repository

    async def client(self, *, org_id: str = ORG_ID, locations: tuple[str, ...] = ("LOC-1",)) -> str:
        async with self.repository.transaction() as unit:
            client_id = await unit.insert_client(org_id, "Acme Staffing")
            for location_id in locations:
                await unit.insert_location(client_id, location_id, f"site {location_id}")
        return client_id

    async def approved_job(
        self,
        client_id: str,
        *,
        org_id: str = ORG_ID,
        title: str = "Warehouse picker",
        payload: dict[str, str] | None = None,
        job_offer_id: str | None = None,
    ) -> SeededJob:
        payload = payload or {
            "title": title,
            "description": "Pick and pack orders on the day shift.",
            "working_location_id": "LOC-1",
        }
        async with self.repository.transaction() as unit:
            job = await unit.insert_job(org_id, client_id, title)
            posting = await unit.insert_posting(job.id, "airwork")
            revision = await unit.insert_revision(
                posting.id,
                source="manual",
                status="approved",
                payload=payload,
                payload_hash=payload_hash(payload),
                approved_by=APPROVER_ID,
            )
        if job_offer_id:
            self.repository.state.postings[posting.id]["job_offer_id"] = job_offer_id
        return SeededJob(client_id=client_id, job_id=job.id, posting_id=posting.id, revision_id=revision.id)


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository(clock=lambda: NOW)


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def seeder(repository: InMemoryRepository) -> PipelineSeeder:
    return PipelineSeeder(repository)
