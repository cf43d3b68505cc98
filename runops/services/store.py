import copy
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from runops.services.repository import (
    ApprovedPostingRecord,
    JobRecord,
    PostingRecord,
    RepositoryConstraintError,
    RepositoryNotFoundError,
    RepositorySchemaMissingError,
    RevisionRecord,
    RunCandidate,
    RunItemRecord,
    RunRecord,
    StalePostingRecord,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InMemoryState:
    clients: dict[str, dict[str, Any]] = field(default_factory=dict)
    locations: dict[str, dict[str, Any]] = field(default_factory=dict)
    jobs: dict[str, dict[str, Any]] = field(default_factory=dict)
    postings: dict[str, dict[str, Any]] = field(default_factory=dict)
    revisions: dict[str, dict[str, Any]] = field(default_factory=dict)
    runs: dict[int, dict[str, Any]] = field(default_factory=dict)
    run_items: dict[int, dict[str, Any]] = field(default_factory=dict)
    fields: dict[str, dict[str, Any]] = field(default_factory=dict)
    codes: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    todos: dict[str, dict[str, Any]] = field(default_factory=dict)
    audit_logs: list[dict[str, Any]] = field(default_factory=list)
    seq: int = 0


class InMemoryRepository:
    """Process-local pipeline store with the same unit primitives as Postgres.

    ``transaction()`` snapshots state and restores it when the block raises.
    Relations listed in ``missing_tables`` behave as if they were never
    provisioned.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self.state = InMemoryState()
        self.clock = clock
        self.missing_tables: set[str] = set()

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryUnit"]:
        snapshot = copy.deepcopy(self.state)
        try:
            yield InMemoryUnit(self)
        except BaseException:
            self.state = snapshot
            raise

    @asynccontextmanager
    async def session(self) -> AsyncIterator["InMemoryUnit"]:
        yield InMemoryUnit(self)


class InMemoryUnit:
    def __init__(self, repository: InMemoryRepository) -> None:
        self.repository = repository

    @property
    def state(self) -> InMemoryState:
        return self.repository.state

    def _require(self, *tables: str) -> None:
        for table in tables:
            if table in self.repository.missing_tables:
                raise RepositorySchemaMissingError(f'relation "{table}" does not exist')

    def _next_seq(self) -> int:
        self.state.seq += 1
        return self.state.seq

    def _now(self) -> datetime:
        return self.repository.clock()

    async def ping(self) -> bool:
        return True

    async def client_exists(self, org_id: str, client_id: str) -> bool:
        self._require("clients")
        client = self.state.clients.get(client_id)
        return client is not None and client["org_id"] == org_id

    async def insert_client(self, org_id: str, name: str) -> str:
        self._require("clients")
        client_id = str(uuid4())
        self.state.clients[client_id] = {"id": client_id, "org_id": org_id, "name": name}
        return client_id

    async def insert_location(self, client_id: str, working_location_id: str, name: str | None = None) -> str:
        self._require("airwork_locations")
        if client_id not in self.state.clients:
            raise RepositoryConstraintError("client does not exist")
        for location in self.state.locations.values():
            if location["client_id"] == client_id and location["working_location_id"] == working_location_id:
                raise RepositoryConstraintError("location already registered for client")
        location_id = str(uuid4())
        self.state.locations[location_id] = {
            "id": location_id,
            "client_id": client_id,
            "working_location_id": working_location_id,
            "name": name,
        }
        return location_id

    async def insert_job(self, org_id: str, client_id: str, internal_title: str) -> JobRecord:
        self._require("jobs")
        if client_id not in self.state.clients:
            raise RepositoryConstraintError("client does not exist")
        job_id = str(uuid4())
        self.state.jobs[job_id] = {
            "id": job_id,
            "org_id": org_id,
            "client_id": client_id,
            "internal_title": internal_title,
            "status": "active",
        }
        return JobRecord(id=job_id, org_id=org_id, client_id=client_id, internal_title=internal_title, status="active")

    async def insert_posting(self, job_id: str, channel: str) -> PostingRecord:
        self._require("job_postings")
        if job_id not in self.state.jobs:
            raise RepositoryConstraintError("job does not exist")
        posting_id = str(uuid4())
        self.state.postings[posting_id] = {
            "id": posting_id,
            "job_id": job_id,
            "channel": channel,
            "job_offer_id": None,
            "publish_status_cache": None,
            "last_published_at": None,
            "freshness_expires_at": None,
            "is_refresh_candidate": False,
            "created_at": self._now(),
            "seq": self._next_seq(),
        }
        return self._posting_record(self.state.postings[posting_id])

    async def get_posting(self, posting_id: str) -> PostingRecord | None:
        self._require("job_postings")
        row = self.state.postings.get(posting_id)
        return self._posting_record(row) if row else None

    async def lock_posting(self, posting_id: str) -> None:
        self._require("job_postings")

    async def location_belongs_to_client(self, org_id: str, client_id: str, working_location_id: str) -> bool:
        return working_location_id in await self.list_location_ids(org_id, client_id)

    async def list_location_ids(self, org_id: str, client_id: str) -> set[str]:
        self._require("airwork_locations")
        client = self.state.clients.get(client_id)
        if client is None or client["org_id"] != org_id:
            return set()
        return {
            row["working_location_id"] for row in self.state.locations.values() if row["client_id"] == client_id
        }

    async def list_active_codes(self, field_key: str) -> set[str]:
        self._require("airwork_codes")
        return {row["code"] for row in self.state.codes.values() if row["field_key"] == field_key and row["is_active"]}

    async def list_field_keys(self) -> list[str]:
        self._require("airwork_fields")
        rows = sorted(self.state.fields.values(), key=lambda row: (row["sort_order"], row["field_key"]))
        return [row["field_key"] for row in rows]

    async def upsert_field(
        self,
        *,
        field_key: str,
        label_ja: str,
        input_kind: str,
        is_editable: bool,
        sort_order: int,
        spec_version: str,
    ) -> None:
        self._require("airwork_fields")
        self.state.fields[field_key] = {
            "field_key": field_key,
            "label_ja": label_ja,
            "input_kind": input_kind,
            "is_editable": is_editable,
            "sort_order": sort_order,
            "spec_version": spec_version,
        }

    async def upsert_code(self, *, field_key: str, code: str, name_ja: str, is_active: bool) -> None:
        self._require("airwork_codes")
        self.state.codes[(field_key, code)] = {
            "field_key": field_key,
            "code": code,
            "name_ja": name_ja,
            "is_active": is_active,
        }

    async def get_revision(self, org_id: str, revision_id: str) -> RevisionRecord | None:
        self._require("job_revisions")
        row = self.state.revisions.get(revision_id)
        if row is None or self._revision_org(row) != org_id:
            return None
        return self._revision_record(row)

    async def list_revisions(self, posting_id: str) -> list[RevisionRecord]:
        self._require("job_revisions")
        rows = [row for row in self.state.revisions.values() if row["job_posting_id"] == posting_id]
        rows.sort(key=lambda row: row["rev_no"], reverse=True)
        return [self._revision_record(row) for row in rows]

    async def get_latest_draft(self, posting_id: str) -> RevisionRecord | None:
        self._require("job_revisions")
        rows = [
            row
            for row in self.state.revisions.values()
            if row["job_posting_id"] == posting_id and row["status"] == "draft"
        ]
        if not rows:
            return None
        latest = max(rows, key=lambda row: (row["updated_at"], row["seq"]))
        return self._revision_record(latest)

    async def get_current_approved(self, posting_id: str) -> RevisionRecord | None:
        self._require("job_revisions")
        row = self._current_approved_row(posting_id)
        return self._revision_record(row) if row else None

    async def insert_revision(
        self,
        posting_id: str,
        *,
        source: str,
        status: str,
        payload: dict[str, str],
        payload_hash: str,
        approved_by: str | None = None,
    ) -> RevisionRecord:
        self._require("job_revisions")
        if posting_id not in self.state.postings:
            raise RepositoryConstraintError("job posting does not exist")
        rev_no = 1 + max(
            (row["rev_no"] for row in self.state.revisions.values() if row["job_posting_id"] == posting_id),
            default=0,
        )
        now = self._now()
        revision_id = str(uuid4())
        self.state.revisions[revision_id] = {
            "id": revision_id,
            "job_posting_id": posting_id,
            "rev_no": rev_no,
            "source": source,
            "status": status,
            "payload": dict(payload),
            "payload_hash": payload_hash,
            "approved_by": approved_by if status == "approved" else None,
            "approved_at": now if status == "approved" else None,
            "created_at": now,
            "updated_at": now,
            "seq": self._next_seq(),
        }
        return self._revision_record(self.state.revisions[revision_id])

    async def update_revision_payload(
        self,
        revision_id: str,
        payload: dict[str, str],
        payload_hash: str,
    ) -> RevisionRecord | None:
        self._require("job_revisions")
        row = self.state.revisions.get(revision_id)
        if row is None or row["status"] != "draft":
            return None
        row["payload"] = dict(payload)
        row["payload_hash"] = payload_hash
        row["updated_at"] = self._now()
        row["seq"] = self._next_seq()
        return self._revision_record(row)

    async def transition_revision(
        self,
        org_id: str,
        revision_id: str,
        *,
        from_statuses: set[str],
        to_status: str,
        approved_by: str | None = None,
    ) -> RevisionRecord | None:
        self._require("job_revisions")
        row = self.state.revisions.get(revision_id)
        if row is None or self._revision_org(row) != org_id or row["status"] not in from_statuses:
            return None
        now = self._now()
        row["status"] = to_status
        if to_status == "approved":
            row["approved_by"] = approved_by
            row["approved_at"] = now
        row["updated_at"] = now
        return self._revision_record(row)

    async def insert_run(
        self,
        *,
        org_id: str,
        client_id: str,
        run_type: str,
        file_format: str,
        status: str = "draft",
    ) -> RunRecord:
        self._require("runs")
        if client_id not in self.state.clients:
            raise RepositoryConstraintError("client does not exist")
        run_id = max(self.state.runs, default=0) + 1
        now = self._now()
        self.state.runs[run_id] = {
            "id": run_id,
            "org_id": org_id,
            "client_id": client_id,
            "run_type": run_type,
            "status": status,
            "file_format": file_format,
            "file_blob_url": None,
            "file_sha256": None,
            "created_at": now,
            "updated_at": now,
        }
        return self._run_record(self.state.runs[run_id])

    async def get_run(self, org_id: str, run_id: int) -> RunRecord | None:
        self._require("runs")
        row = self.state.runs.get(run_id)
        if row is None or row["org_id"] != org_id:
            return None
        return self._run_record(row)

    async def list_runs(self, org_id: str) -> list[RunRecord]:
        self._require("runs")
        rows = [row for row in self.state.runs.values() if row["org_id"] == org_id]
        rows.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
        return [self._run_record(row) for row in rows]

    async def list_run_candidates(
        self,
        *,
        org_id: str,
        client_id: str,
        channel: str,
        latest_approved_only: bool,
    ) -> list[RunCandidate]:
        self._require("jobs", "job_postings", "job_revisions")
        candidates: list[RunCandidate] = []
        for job in self.state.jobs.values():
            if job["org_id"] != org_id or job["client_id"] != client_id:
                continue
            posting = self._latest_posting(
                [row for row in self.state.postings.values() if row["job_id"] == job["id"] and row["channel"] == channel]
            )
            if posting is None:
                continue
            approved = self._current_approved_row(posting["id"])
            if approved is None:
                continue
            if latest_approved_only:
                latest_rev_no = max(
                    row["rev_no"] for row in self.state.revisions.values() if row["job_posting_id"] == posting["id"]
                )
                if approved["rev_no"] != latest_rev_no:
                    continue
            candidates.append(
                RunCandidate(
                    job_posting_id=posting["id"],
                    job_offer_id=posting["job_offer_id"],
                    approved_revision_id=approved["id"],
                )
            )
        candidates.sort(key=lambda candidate: candidate.job_posting_id)
        return candidates

    async def insert_run_item(self, *, run_id: int, posting_id: str, revision_id: str, action: str) -> int:
        self._require("run_items")
        if run_id not in self.state.runs or posting_id not in self.state.postings:
            raise RepositoryConstraintError("run item references missing run or posting")
        item_id = max(self.state.run_items, default=0) + 1
        self.state.run_items[item_id] = {
            "id": item_id,
            "run_id": run_id,
            "job_posting_id": posting_id,
            "job_revision_id": revision_id,
            "action": action,
            "validation_errors": None,
        }
        return item_id

    async def list_run_items(self, run_id: int) -> list[RunItemRecord]:
        self._require("run_items")
        items: list[RunItemRecord] = []
        for item_id in sorted(self.state.run_items):
            row = self.state.run_items[item_id]
            if row["run_id"] != run_id:
                continue
            posting = self.state.postings[row["job_posting_id"]]
            job = self.state.jobs[posting["job_id"]]
            revision = self.state.revisions.get(row["job_revision_id"])
            items.append(
                RunItemRecord(
                    id=row["id"],
                    run_id=row["run_id"],
                    job_posting_id=row["job_posting_id"],
                    job_revision_id=row["job_revision_id"],
                    action=row["action"],
                    job_id=job["id"],
                    job_title=job["internal_title"],
                    job_offer_id=posting["job_offer_id"],
                    payload=dict(revision["payload"]) if revision else {},
                    validation=copy.deepcopy(row["validation_errors"]),
                )
            )
        return items

    async def set_run_item_validation(self, item_id: int, validation: Any) -> None:
        self._require("run_items")
        row = self.state.run_items.get(item_id)
        if row is None:
            raise RepositoryNotFoundError("run item not found")
        row["validation_errors"] = copy.deepcopy(validation)

    async def set_run_file(self, *, run_id: int, blob_url: str, sha256: str, status: str) -> None:
        self._require("runs")
        row = self.state.runs.get(run_id)
        if row is None:
            raise RepositoryNotFoundError("run not found")
        row.update(file_blob_url=blob_url, file_sha256=sha256, status=status, updated_at=self._now())

    async def set_run_status(
        self,
        *,
        org_id: str,
        run_id: int,
        status: str,
        from_statuses: set[str],
    ) -> bool:
        self._require("runs")
        row = self.state.runs.get(run_id)
        if row is None or row["org_id"] != org_id or row["status"] not in from_statuses:
            return False
        row.update(status=status, updated_at=self._now())
        return True

    async def find_refresh_run(
        self,
        *,
        org_id: str,
        client_id: str,
        statuses: set[str],
        day_start: datetime,
        day_end: datetime,
    ) -> int | None:
        self._require("runs")
        rows = [
            row
            for row in self.state.runs.values()
            if row["org_id"] == org_id
            and row["client_id"] == client_id
            and row["run_type"] == "refresh"
            and row["status"] in statuses
            and day_start <= row["created_at"] < day_end
        ]
        if not rows:
            return None
        return max(rows, key=lambda row: (row["created_at"], row["id"]))["id"]

    async def run_item_exists(self, *, posting_id: str, run_id: int | None = None, action: str | None = None) -> bool:
        self._require("run_items")
        return any(
            row["job_posting_id"] == posting_id
            and (run_id is None or row["run_id"] == run_id)
            and (action is None or row["action"] == action)
            for row in self.state.run_items.values()
        )

    async def list_client_approved_postings(
        self,
        *,
        org_id: str,
        client_id: str,
        channel: str,
    ) -> list[ApprovedPostingRecord]:
        self._require("jobs", "job_postings", "job_revisions")
        records: list[ApprovedPostingRecord] = []
        postings = sorted(self.state.postings.values(), key=lambda row: (row["created_at"], row["seq"]))
        for posting in postings:
            job = self.state.jobs[posting["job_id"]]
            if job["org_id"] != org_id or job["client_id"] != client_id or posting["channel"] != channel:
                continue
            approved = self._current_approved_row(posting["id"])
            if approved is None:
                continue
            records.append(
                ApprovedPostingRecord(
                    job_posting_id=posting["id"],
                    job_offer_id=posting["job_offer_id"],
                    payload=dict(approved["payload"]),
                )
            )
        return records

    async def merge_posting_import(
        self,
        posting_id: str,
        *,
        job_offer_id: str | None,
        publish_status: str | None,
        last_published_at: datetime | None,
        freshness_expires_at: datetime | None,
    ) -> int:
        self._require("job_postings")
        row = self.state.postings.get(posting_id)
        if row is None:
            return 0
        if row["job_offer_id"] is None:
            row["job_offer_id"] = job_offer_id
        if publish_status is not None:
            row["publish_status_cache"] = publish_status
        if last_published_at is not None:
            row["last_published_at"] = last_published_at
        if freshness_expires_at is not None:
            row["freshness_expires_at"] = freshness_expires_at
        return 1

    async def count_unlinked_create_items(self, run_id: int) -> int:
        self._require("run_items")
        return sum(
            1
            for row in self.state.run_items.values()
            if row["run_id"] == run_id
            and row["action"] == "create"
            and self.state.postings[row["job_posting_id"]]["job_offer_id"] is None
        )

    async def find_open_todo(
        self,
        *,
        org_id: str,
        todo_type: str,
        client_id: str | None,
        job_id: str | None,
        run_id: int | None,
    ) -> str | None:
        self._require("todos")
        for row in self.state.todos.values():
            if (
                row["org_id"] == org_id
                and row["type"] == todo_type
                and row["client_id"] == client_id
                and row["job_id"] == job_id
                and row["run_id"] == run_id
                and row["status"] not in {"done", "canceled"}
            ):
                return row["id"]
        return None

    async def insert_todo(
        self,
        *,
        org_id: str,
        todo_type: str,
        title: str,
        instructions: str | None,
        client_id: str | None,
        job_id: str | None,
        run_id: int | None,
    ) -> str:
        self._require("todos")
        todo_id = str(uuid4())
        self.state.todos[todo_id] = {
            "id": todo_id,
            "org_id": org_id,
            "status": "open",
            "type": todo_type,
            "title": title,
            "instructions": instructions,
            "evidence_urls": [],
            "client_id": client_id,
            "job_id": job_id,
            "run_id": run_id,
        }
        return todo_id

    async def insert_audit_log(
        self,
        *,
        org_id: str,
        action: str,
        payload: dict[str, Any],
        created_by: str | None,
    ) -> None:
        self._require("audit_logs")
        self.state.audit_logs.append(
            {
                "org_id": org_id,
                "action": action,
                "payload": copy.deepcopy(payload),
                "created_by": created_by,
                "created_at": self._now(),
            }
        )

    async def list_stale_postings(
        self,
        *,
        channel: str,
        now: datetime,
        stale_after_days: int,
    ) -> list[StalePostingRecord]:
        self._require("jobs", "job_postings")
        threshold = now - timedelta(days=stale_after_days)
        records: list[StalePostingRecord] = []
        for job in self.state.jobs.values():
            posting = self._latest_posting(
                [row for row in self.state.postings.values() if row["job_id"] == job["id"] and row["channel"] == channel]
            )
            if posting is None:
                continue
            published = posting["last_published_at"]
            expires = posting["freshness_expires_at"]
            if (published is not None and published <= threshold) or (expires is not None and expires <= now):
                records.append(
                    StalePostingRecord(
                        posting_id=posting["id"],
                        job_id=job["id"],
                        org_id=job["org_id"],
                        client_id=job["client_id"],
                        last_published_at=published,
                        freshness_expires_at=expires,
                    )
                )
        records.sort(key=lambda record: (record.org_id, record.client_id, record.job_id))
        return records

    async def mark_refresh_candidate(self, posting_id: str, *, now: datetime, stale_after_days: int) -> None:
        self._require("job_postings")
        row = self.state.postings.get(posting_id)
        if row is None:
            return
        row["is_refresh_candidate"] = True
        published = row["last_published_at"]
        expires = row["freshness_expires_at"]
        if published is not None and (expires is None or expires > now):
            computed = published + timedelta(days=stale_after_days)
            row["freshness_expires_at"] = max(expires or computed, computed)

    async def find_unlinked_sibling_posting(
        self,
        *,
        job_id: str,
        channel: str,
        exclude_posting_id: str,
    ) -> PostingRecord | None:
        self._require("job_postings")
        rows = [
            row
            for row in self.state.postings.values()
            if row["job_id"] == job_id
            and row["channel"] == channel
            and row["job_offer_id"] is None
            and row["id"] != exclude_posting_id
        ]
        latest = self._latest_posting(rows)
        return self._posting_record(latest) if latest else None

    def _latest_posting(self, rows: list[dict[str, Any]]) -> dict[str, Any] | None:
        if not rows:
            return None
        return max(rows, key=lambda row: (row["created_at"], row["seq"]))

    def _current_approved_row(self, posting_id: str) -> dict[str, Any] | None:
        rows = [
            row
            for row in self.state.revisions.values()
            if row["job_posting_id"] == posting_id and row["status"] == "approved"
        ]
        if not rows:
            return None
        return max(rows, key=lambda row: (row["approved_at"] is not None, row["approved_at"] or 0, row["rev_no"]))

    def _revision_org(self, row: dict[str, Any]) -> str | None:
        posting = self.state.postings.get(row["job_posting_id"])
        if posting is None:
            return None
        return self.state.jobs[posting["job_id"]]["org_id"]

    def _posting_record(self, row: dict[str, Any]) -> PostingRecord:
        job = self.state.jobs[row["job_id"]]
        return PostingRecord(
            id=row["id"],
            job_id=row["job_id"],
            org_id=job["org_id"],
            client_id=job["client_id"],
            channel=row["channel"],
            job_offer_id=row["job_offer_id"],
            publish_status_cache=row["publish_status_cache"],
            last_published_at=row["last_published_at"],
            freshness_expires_at=row["freshness_expires_at"],
            is_refresh_candidate=row["is_refresh_candidate"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _revision_record(row: dict[str, Any]) -> RevisionRecord:
        return RevisionRecord(
            id=row["id"],
            job_posting_id=row["job_posting_id"],
            rev_no=row["rev_no"],
            source=row["source"],
            status=row["status"],
            payload=dict(row["payload"]),
            payload_hash=row["payload_hash"],
            approved_by=row["approved_by"],
            approved_at=row["approved_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _run_record(self, row: dict[str, Any]) -> RunRecord:
        item_count = sum(1 for item in self.state.run_items.values() if item["run_id"] == row["id"])
        return RunRecord(
            id=row["id"],
            org_id=row["org_id"],
            client_id=row["client_id"],
            run_type=row["run_type"],
            status=row["status"],
            file_format=row["file_format"],
            file_blob_url=row["file_blob_url"],
            file_sha256=row["file_sha256"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            item_count=item_count,
        )


