from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from runops.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositorySchemaMissingError(RepositoryError):
    """Raised when a relation the pipeline needs has not been provisioned."""


class RepositoryConstraintError(RepositoryError):
    """Raised when a write violates an integrity constraint."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class JobRecord:
    id: str
    org_id: str
    client_id: str
    internal_title: str
    status: str


@dataclass(slots=True)
class PostingRecord:
    id: str
    job_id: str
    org_id: str
    client_id: str
    channel: str
    job_offer_id: str | None
    publish_status_cache: str | None
    last_published_at: datetime | None
    freshness_expires_at: datetime | None
    is_refresh_candidate: bool
    created_at: datetime | None


@dataclass(slots=True)
class RevisionRecord:
    id: str
    job_posting_id: str
    rev_no: int
    source: str
    status: str
    payload: dict[str, str]
    payload_hash: str
    approved_by: str | None
    approved_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(slots=True)
class RunRecord:
    id: int
    org_id: str
    client_id: str
    run_type: str
    status: str
    file_format: str | None
    file_blob_url: str | None
    file_sha256: str | None
    created_at: datetime | None
    updated_at: datetime | None
    item_count: int = 0


@dataclass(slots=True)
class RunItemRecord:
    id: int
    run_id: int
    job_posting_id: str
    job_revision_id: str
    action: str
    job_id: str
    job_title: str
    job_offer_id: str | None
    payload: dict[str, str] = field(default_factory=dict)
    validation: Any = None


@dataclass(slots=True)
class RunCandidate:
    job_posting_id: str
    job_offer_id: str | None
    approved_revision_id: str


@dataclass(slots=True)
class ApprovedPostingRecord:
    job_posting_id: str
    job_offer_id: str | None
    payload: dict[str, str]


@dataclass(slots=True)
class StalePostingRecord:
    posting_id: str
    job_id: str
    org_id: str
    client_id: str
    last_published_at: datetime | None
    freshness_expires_at: datetime | None


class PipelineRepository(Protocol):
    def transaction(self) -> Any: ...

    def session(self) -> Any: ...

    async def close(self) -> None: ...


_POSTING_SELECT = """
    select
      jp.id::text as id,
      jp.job_id::text as job_id,
      j.org_id,
      j.client_id::text as client_id,
      jp.channel,
      jp.job_offer_id,
      jp.publish_status_cache,
      jp.last_published_at,
      jp.freshness_expires_at,
      jp.is_refresh_candidate,
      jp.created_at
    from job_postings jp
    join jobs j on j.id = jp.job_id
"""

_REVISION_COLUMNS = """
      jr.id::text as id,
      jr.job_posting_id::text as job_posting_id,
      jr.rev_no,
      jr.source,
      jr.status,
      jr.payload_json,
      jr.payload_hash,
      jr.approved_by,
      jr.approved_at,
      jr.created_at,
      jr.updated_at
"""

_RUN_COLUMNS = """
      r.id,
      r.org_id,
      r.client_id::text as client_id,
      r.run_type,
      r.status,
      r.file_format,
      r.file_blob_url,
      r.file_sha256,
      r.created_at,
      r.updated_at,
      (select count(*) from run_items ri where ri.run_id = r.id) as item_count
"""


class PostgresUnit:
    """Pipeline data primitives bound to one asyncpg connection."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self.conn = conn

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        with _translated_errors():
            return await self.conn.fetch(query, *args)

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        with _translated_errors():
            return await self.conn.fetchrow(query, *args)

    async def _fetchval(self, query: str, *args: Any) -> Any:
        with _translated_errors():
            return await self.conn.fetchval(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        with _translated_errors():
            return await self.conn.execute(query, *args)

    async def ping(self) -> bool:
        return await self._fetchval("select 1") == 1

    async def client_exists(self, org_id: str, client_id: str) -> bool:
        row = await self._fetchrow(
            "select 1 from clients where id = $1::uuid and org_id = $2",
            client_id,
            org_id,
        )
        return row is not None

    async def insert_client(self, org_id: str, name: str) -> str:
        return await self._fetchval(
            "insert into clients (org_id, name) values ($1, $2) returning id::text",
            org_id,
            name,
        )

    async def insert_location(self, client_id: str, working_location_id: str, name: str | None = None) -> str:
        return await self._fetchval(
            """
            insert into airwork_locations (client_id, working_location_id, name)
            values ($1::uuid, $2, $3)
            returning id::text
            """,
            client_id,
            working_location_id,
            name,
        )

    async def insert_job(self, org_id: str, client_id: str, internal_title: str) -> JobRecord:
        row = await self._fetchrow(
            """
            insert into jobs (org_id, client_id, internal_title, status)
            values ($1, $2::uuid, $3, 'active')
            returning id::text as id, org_id, client_id::text as client_id, internal_title, status
            """,
            org_id,
            client_id,
            internal_title,
        )
        return JobRecord(
            id=row["id"],
            org_id=row["org_id"],
            client_id=row["client_id"],
            internal_title=row["internal_title"],
            status=row["status"],
        )

    async def insert_posting(self, job_id: str, channel: str) -> PostingRecord:
        posting_id = await self._fetchval(
            """
            insert into job_postings (job_id, channel, job_offer_id)
            values ($1::uuid, $2, null)
            returning id::text
            """,
            job_id,
            channel,
        )
        posting = await self.get_posting(posting_id)
        if posting is None:
            raise RepositoryConflictError("failed to insert job posting")
        return posting

    async def get_posting(self, posting_id: str) -> PostingRecord | None:
        row = await self._fetchrow(f"{_POSTING_SELECT} where jp.id = $1::uuid", posting_id)
        return self._posting_row_to_record(row) if row else None

    async def lock_posting(self, posting_id: str) -> None:
        await self._execute("select id from job_postings where id = $1::uuid for update", posting_id)

    async def location_belongs_to_client(self, org_id: str, client_id: str, working_location_id: str) -> bool:
        row = await self._fetchrow(
            """
            select al.id
            from airwork_locations al
            join clients c on c.id = al.client_id
            where c.org_id = $1 and al.client_id = $2::uuid and al.working_location_id = $3
            limit 1
            """,
            org_id,
            client_id,
            working_location_id,
        )
        return row is not None

    async def list_location_ids(self, org_id: str, client_id: str) -> set[str]:
        rows = await self._fetch(
            """
            select al.working_location_id
            from airwork_locations al
            join clients c on c.id = al.client_id
            where c.org_id = $1 and al.client_id = $2::uuid
            """,
            org_id,
            client_id,
        )
        return {row["working_location_id"] for row in rows}

    async def list_active_codes(self, field_key: str) -> set[str]:
        rows = await self._fetch(
            "select code from airwork_codes where field_key = $1 and is_active = true",
            field_key,
        )
        return {row["code"] for row in rows}

    async def list_field_keys(self) -> list[str]:
        rows = await self._fetch("select field_key from airwork_fields order by sort_order asc, field_key asc")
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
        await self._execute(
            """
            insert into airwork_fields (field_key, label_ja, input_kind, is_editable, sort_order, spec_version)
            values ($1, $2, $3, $4, $5, $6)
            on conflict (field_key)
            do update set
              label_ja = excluded.label_ja,
              input_kind = excluded.input_kind,
              is_editable = excluded.is_editable,
              sort_order = excluded.sort_order,
              spec_version = excluded.spec_version,
              updated_at = now()
            """,
            field_key,
            label_ja,
            input_kind,
            is_editable,
            sort_order,
            spec_version,
        )

    async def upsert_code(self, *, field_key: str, code: str, name_ja: str, is_active: bool) -> None:
        await self._execute(
            """
            insert into airwork_codes (field_key, code, name_ja, is_active)
            values ($1, $2, $3, $4)
            on conflict (field_key, code)
            do update set
              name_ja = excluded.name_ja,
              is_active = excluded.is_active,
              updated_at = now()
            """,
            field_key,
            code,
            name_ja,
            is_active,
        )

    async def get_revision(self, org_id: str, revision_id: str) -> RevisionRecord | None:
        row = await self._fetchrow(
            f"""
            select {_REVISION_COLUMNS}
            from job_revisions jr
            join job_postings jp on jp.id = jr.job_posting_id
            join jobs j on j.id = jp.job_id
            where jr.id = $1::uuid and j.org_id = $2
            """,
            revision_id,
            org_id,
        )
        return self._revision_row_to_record(row) if row else None

    async def list_revisions(self, posting_id: str) -> list[RevisionRecord]:
        rows = await self._fetch(
            f"""
            select {_REVISION_COLUMNS}
            from job_revisions jr
            where jr.job_posting_id = $1::uuid
            order by jr.rev_no desc
            """,
            posting_id,
        )
        return [self._revision_row_to_record(row) for row in rows]

    async def get_latest_draft(self, posting_id: str) -> RevisionRecord | None:
        row = await self._fetchrow(
            f"""
            select {_REVISION_COLUMNS}
            from job_revisions jr
            where jr.job_posting_id = $1::uuid and jr.status = 'draft'
            order by jr.updated_at desc nulls last, jr.created_at desc nulls last
            limit 1
            """,
            posting_id,
        )
        return self._revision_row_to_record(row) if row else None

    async def get_current_approved(self, posting_id: str) -> RevisionRecord | None:
        row = await self._fetchrow(
            f"""
            select {_REVISION_COLUMNS}
            from job_revisions jr
            where jr.job_posting_id = $1::uuid and jr.status = 'approved'
            order by jr.approved_at desc nulls last, jr.rev_no desc
            limit 1
            """,
            posting_id,
        )
        return self._revision_row_to_record(row) if row else None

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
        row = await self._fetchrow(
            f"""
            with next_rev as (
              select coalesce(max(rev_no), 0) + 1 as rev_no
              from job_revisions
              where job_posting_id = $1::uuid
            )
            insert into job_revisions as jr (
              job_posting_id,
              rev_no,
              source,
              status,
              payload_json,
              payload_hash,
              approved_by,
              approved_at
            )
            select
              $1::uuid,
              next_rev.rev_no,
              $2,
              $3,
              $4::jsonb,
              $5,
              $6,
              case when $3 = 'approved' then now() else null end
            from next_rev
            returning {_REVISION_COLUMNS}
            """,
            posting_id,
            source,
            status,
            json.dumps(payload),
            payload_hash,
            approved_by,
        )
        return self._revision_row_to_record(row)

    async def update_revision_payload(
        self,
        revision_id: str,
        payload: dict[str, str],
        payload_hash: str,
    ) -> RevisionRecord | None:
        row = await self._fetchrow(
            f"""
            update job_revisions as jr
            set payload_json = $2::jsonb, payload_hash = $3, updated_at = now()
            where jr.id = $1::uuid and jr.status = 'draft'
            returning {_REVISION_COLUMNS}
            """,
            revision_id,
            json.dumps(payload),
            payload_hash,
        )
        return self._revision_row_to_record(row) if row else None

    async def transition_revision(
        self,
        org_id: str,
        revision_id: str,
        *,
        from_statuses: set[str],
        to_status: str,
        approved_by: str | None = None,
    ) -> RevisionRecord | None:
        row = await self._fetchrow(
            f"""
            with target as (
              select jr.id
              from job_revisions jr
              join job_postings jp on jp.id = jr.job_posting_id
              join jobs j on j.id = jp.job_id
              where jr.id = $1::uuid and j.org_id = $2
            )
            update job_revisions as jr
            set
              status = $3,
              approved_by = case when $3 = 'approved' then $4 else jr.approved_by end,
              approved_at = case when $3 = 'approved' then now() else jr.approved_at end,
              updated_at = now()
            from target
            where jr.id = target.id and jr.status = any($5::text[])
            returning {_REVISION_COLUMNS}
            """,
            revision_id,
            org_id,
            to_status,
            approved_by,
            sorted(from_statuses),
        )
        return self._revision_row_to_record(row) if row else None

    async def insert_run(
        self,
        *,
        org_id: str,
        client_id: str,
        run_type: str,
        file_format: str,
        status: str = "draft",
    ) -> RunRecord:
        run_id = await self._fetchval(
            """
            insert into runs (org_id, client_id, run_type, status, file_format)
            values ($1, $2::uuid, $3, $4, $5)
            returning id
            """,
            org_id,
            client_id,
            run_type,
            status,
            file_format,
        )
        run = await self.get_run(org_id, run_id)
        if run is None:
            raise RepositoryConflictError("failed to insert run")
        return run

    async def get_run(self, org_id: str, run_id: int) -> RunRecord | None:
        row = await self._fetchrow(
            f"select {_RUN_COLUMNS} from runs r where r.org_id = $1 and r.id = $2",
            org_id,
            run_id,
        )
        return self._run_row_to_record(row) if row else None

    async def list_runs(self, org_id: str) -> list[RunRecord]:
        rows = await self._fetch(
            f"select {_RUN_COLUMNS} from runs r where r.org_id = $1 order by r.created_at desc, r.id desc",
            org_id,
        )
        return [self._run_row_to_record(row) for row in rows]

    async def list_run_candidates(
        self,
        *,
        org_id: str,
        client_id: str,
        channel: str,
        latest_approved_only: bool,
    ) -> list[RunCandidate]:
        rows = await self._fetch(
            """
            with postings as (
              select jobs.id as job_id, posting.id as job_posting_id, posting.job_offer_id
              from jobs
              join lateral (
                select id, job_offer_id
                from job_postings
                where job_postings.job_id = jobs.id and job_postings.channel = $3
                order by job_postings.created_at desc nulls last
                limit 1
              ) as posting on true
              where jobs.org_id = $1 and jobs.client_id = $2::uuid
            ),
            approved as (
              select distinct on (jr.job_posting_id)
                jr.job_posting_id,
                jr.id as approved_revision_id,
                jr.rev_no
              from job_revisions jr
              join postings on postings.job_posting_id = jr.job_posting_id
              where jr.status = 'approved'
              order by jr.job_posting_id, jr.approved_at desc nulls last, jr.rev_no desc
            ),
            latest_rev as (
              select jr.job_posting_id, max(jr.rev_no) as latest_rev_no
              from job_revisions jr
              join postings on postings.job_posting_id = jr.job_posting_id
              group by jr.job_posting_id
            )
            select
              postings.job_posting_id::text as job_posting_id,
              postings.job_offer_id,
              approved.approved_revision_id::text as approved_revision_id
            from postings
            join approved on approved.job_posting_id = postings.job_posting_id
            join latest_rev on latest_rev.job_posting_id = postings.job_posting_id
            where ($4 = false or approved.rev_no = latest_rev.latest_rev_no)
            order by postings.job_posting_id
            """,
            org_id,
            client_id,
            channel,
            latest_approved_only,
        )
        return [
            RunCandidate(
                job_posting_id=row["job_posting_id"],
                job_offer_id=row["job_offer_id"],
                approved_revision_id=row["approved_revision_id"],
            )
            for row in rows
        ]

    async def insert_run_item(self, *, run_id: int, posting_id: str, revision_id: str, action: str) -> int:
        return await self._fetchval(
            """
            insert into run_items (run_id, job_posting_id, job_revision_id, action)
            values ($1, $2::uuid, $3::uuid, $4)
            returning id
            """,
            run_id,
            posting_id,
            revision_id,
            action,
        )

    async def list_run_items(self, run_id: int) -> list[RunItemRecord]:
        rows = await self._fetch(
            """
            select
              ri.id,
              ri.run_id,
              ri.job_posting_id::text as job_posting_id,
              ri.job_revision_id::text as job_revision_id,
              ri.action,
              jobs.id::text as job_id,
              jobs.internal_title as job_title,
              jp.job_offer_id,
              jr.payload_json,
              ri.validation_errors
            from run_items ri
            join job_postings jp on jp.id = ri.job_posting_id
            join jobs on jobs.id = jp.job_id
            join job_revisions jr on jr.id = ri.job_revision_id
            where ri.run_id = $1
            order by ri.id asc
            """,
            run_id,
        )
        return [
            RunItemRecord(
                id=row["id"],
                run_id=row["run_id"],
                job_posting_id=row["job_posting_id"],
                job_revision_id=row["job_revision_id"],
                action=row["action"],
                job_id=row["job_id"],
                job_title=row["job_title"],
                job_offer_id=row["job_offer_id"],
                payload=self._coerce_payload(row["payload_json"]),
                validation=self._coerce_json(row["validation_errors"]),
            )
            for row in rows
        ]

    async def set_run_item_validation(self, item_id: int, validation: Any) -> None:
        await self._execute(
            """
            update run_items
            set validation_errors = $2::jsonb, updated_at = now()
            where id = $1
            """,
            item_id,
            json.dumps(validation) if validation is not None else None,
        )

    async def set_run_file(self, *, run_id: int, blob_url: str, sha256: str, status: str) -> None:
        await self._execute(
            """
            update runs
            set file_blob_url = $2, file_sha256 = $3, status = $4, updated_at = now()
            where id = $1
            """,
            run_id,
            blob_url,
            sha256,
            status,
        )

    async def set_run_status(
        self,
        *,
        org_id: str,
        run_id: int,
        status: str,
        from_statuses: set[str],
    ) -> bool:
        result = await self._execute(
            """
            update runs
            set status = $3, updated_at = now()
            where org_id = $1 and id = $2 and status = any($4::text[])
            """,
            org_id,
            run_id,
            status,
            sorted(from_statuses),
        )
        return self._affected_rows(result) > 0

    async def find_refresh_run(
        self,
        *,
        org_id: str,
        client_id: str,
        statuses: set[str],
        day_start: datetime,
        day_end: datetime,
    ) -> int | None:
        return await self._fetchval(
            """
            select id
            from runs
            where org_id = $1
              and client_id = $2::uuid
              and run_type = 'refresh'
              and status = any($3::text[])
              and created_at >= $4
              and created_at < $5
            order by created_at desc
            limit 1
            """,
            org_id,
            client_id,
            sorted(statuses),
            day_start,
            day_end,
        )

    async def run_item_exists(self, *, posting_id: str, run_id: int | None = None, action: str | None = None) -> bool:
        row = await self._fetchrow(
            """
            select id
            from run_items
            where job_posting_id = $1::uuid
              and ($2::bigint is null or run_id = $2)
              and ($3::text is null or action = $3)
            limit 1
            """,
            posting_id,
            run_id,
            action,
        )
        return row is not None

    async def list_client_approved_postings(
        self,
        *,
        org_id: str,
        client_id: str,
        channel: str,
    ) -> list[ApprovedPostingRecord]:
        rows = await self._fetch(
            """
            select jp.id::text as job_posting_id, jp.job_offer_id, jr.payload_json
            from job_postings jp
            join jobs on jobs.id = jp.job_id
            join lateral (
              select payload_json
              from job_revisions
              where job_posting_id = jp.id and status = 'approved'
              order by approved_at desc nulls last, rev_no desc
              limit 1
            ) as jr on true
            where jobs.org_id = $1 and jobs.client_id = $2::uuid and jp.channel = $3
            order by jp.created_at asc
            """,
            org_id,
            client_id,
            channel,
        )
        return [
            ApprovedPostingRecord(
                job_posting_id=row["job_posting_id"],
                job_offer_id=row["job_offer_id"],
                payload=self._coerce_payload(row["payload_json"]),
            )
            for row in rows
        ]

    async def merge_posting_import(
        self,
        posting_id: str,
        *,
        job_offer_id: str | None,
        publish_status: str | None,
        last_published_at: datetime | None,
        freshness_expires_at: datetime | None,
    ) -> int:
        result = await self._execute(
            """
            update job_postings
            set
              job_offer_id = coalesce(job_offer_id, $2),
              publish_status_cache = coalesce($3, publish_status_cache),
              last_published_at = coalesce($4, last_published_at),
              freshness_expires_at = coalesce($5, freshness_expires_at),
              updated_at = now()
            where id = $1::uuid
            """,
            posting_id,
            job_offer_id,
            publish_status,
            last_published_at,
            freshness_expires_at,
        )
        return self._affected_rows(result)

    async def count_unlinked_create_items(self, run_id: int) -> int:
        count = await self._fetchval(
            """
            select count(*)
            from run_items ri
            join job_postings jp on jp.id = ri.job_posting_id
            where ri.run_id = $1 and ri.action = 'create' and jp.job_offer_id is null
            """,
            run_id,
        )
        return int(count or 0)

    async def find_open_todo(
        self,
        *,
        org_id: str,
        todo_type: str,
        client_id: str | None,
        job_id: str | None,
        run_id: int | None,
    ) -> str | None:
        return await self._fetchval(
            """
            select id::text
            from todos
            where org_id = $1
              and type = $2
              and client_id is not distinct from $3::uuid
              and job_id is not distinct from $4::uuid
              and run_id is not distinct from $5::bigint
              and status not in ('done', 'canceled')
            limit 1
            """,
            org_id,
            todo_type,
            client_id,
            job_id,
            run_id,
        )

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
        return await self._fetchval(
            """
            insert into todos (org_id, status, type, title, instructions, evidence_urls, client_id, job_id, run_id)
            values ($1, 'open', $2, $3, $4, '[]'::jsonb, $5::uuid, $6::uuid, $7)
            returning id::text
            """,
            org_id,
            todo_type,
            title,
            instructions,
            client_id,
            job_id,
            run_id,
        )

    async def insert_audit_log(
        self,
        *,
        org_id: str,
        action: str,
        payload: dict[str, Any],
        created_by: str | None,
    ) -> None:
        await self._execute(
            """
            insert into audit_logs (org_id, action, payload_json, created_by)
            values ($1, $2, $3::jsonb, $4)
            """,
            org_id,
            action,
            json.dumps(payload, default=str),
            created_by,
        )

    async def list_stale_postings(
        self,
        *,
        channel: str,
        now: datetime,
        stale_after_days: int,
    ) -> list[StalePostingRecord]:
        rows = await self._fetch(
            """
            with latest_postings as (
              select distinct on (jp.job_id)
                jp.id,
                jp.job_id,
                jp.last_published_at,
                jp.freshness_expires_at
              from job_postings jp
              where jp.channel = $1
              order by jp.job_id, jp.created_at desc nulls last
            )
            select
              lp.id::text as posting_id,
              lp.job_id::text as job_id,
              jobs.org_id,
              jobs.client_id::text as client_id,
              lp.last_published_at,
              lp.freshness_expires_at
            from latest_postings lp
            join jobs on jobs.id = lp.job_id
            where (lp.last_published_at is not null
                   and lp.last_published_at <= $2::timestamptz - ($3::int * interval '1 day'))
               or (lp.freshness_expires_at is not null
                   and lp.freshness_expires_at <= $2::timestamptz)
            order by jobs.org_id, jobs.client_id, lp.job_id
            """,
            channel,
            now,
            stale_after_days,
        )
        return [
            StalePostingRecord(
                posting_id=row["posting_id"],
                job_id=row["job_id"],
                org_id=row["org_id"],
                client_id=row["client_id"],
                last_published_at=row["last_published_at"],
                freshness_expires_at=row["freshness_expires_at"],
            )
            for row in rows
        ]

    async def mark_refresh_candidate(self, posting_id: str, *, now: datetime, stale_after_days: int) -> None:
        await self._execute(
            """
            update job_postings
            set
              is_refresh_candidate = true,
              freshness_expires_at = case
                when last_published_at is not null
                 and (freshness_expires_at is null or freshness_expires_at > $2::timestamptz)
                then greatest(
                  coalesce(freshness_expires_at, last_published_at + ($3::int * interval '1 day')),
                  last_published_at + ($3::int * interval '1 day')
                )
                else freshness_expires_at
              end,
              updated_at = now()
            where id = $1::uuid
            """,
            posting_id,
            now,
            stale_after_days,
        )

    async def find_unlinked_sibling_posting(
        self,
        *,
        job_id: str,
        channel: str,
        exclude_posting_id: str,
    ) -> PostingRecord | None:
        row = await self._fetchrow(
            f"""
            {_POSTING_SELECT}
            where jp.job_id = $1::uuid
              and jp.channel = $2
              and jp.job_offer_id is null
              and jp.id <> $3::uuid
            order by jp.created_at desc nulls last
            limit 1
            """,
            job_id,
            channel,
            exclude_posting_id,
        )
        return self._posting_row_to_record(row) if row else None

    @staticmethod
    def _affected_rows(status: str) -> int:
        # asyncpg returns the command tag, e.g. "UPDATE 3".
        try:
            return int(str(status).rsplit(" ", maxsplit=1)[-1])
        except ValueError:
            return 0

    @classmethod
    def _posting_row_to_record(cls, row: asyncpg.Record) -> PostingRecord:
        return PostingRecord(
            id=row["id"],
            job_id=row["job_id"],
            org_id=row["org_id"],
            client_id=row["client_id"],
            channel=row["channel"],
            job_offer_id=row["job_offer_id"],
            publish_status_cache=row["publish_status_cache"],
            last_published_at=row["last_published_at"],
            freshness_expires_at=row["freshness_expires_at"],
            is_refresh_candidate=bool(row["is_refresh_candidate"]),
            created_at=row["created_at"],
        )

    @classmethod
    def _revision_row_to_record(cls, row: asyncpg.Record) -> RevisionRecord:
        return RevisionRecord(
            id=row["id"],
            job_posting_id=row["job_posting_id"],
            rev_no=int(row["rev_no"]),
            source=row["source"],
            status=row["status"],
            payload=cls._coerce_payload(row["payload_json"]),
            payload_hash=row["payload_hash"],
            approved_by=row["approved_by"],
            approved_at=row["approved_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _run_row_to_record(row: asyncpg.Record) -> RunRecord:
        return RunRecord(
            id=int(row["id"]),
            org_id=row["org_id"],
            client_id=row["client_id"],
            run_type=row["run_type"],
            status=row["status"],
            file_format=row["file_format"],
            file_blob_url=row["file_blob_url"],
            file_sha256=row["file_sha256"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            item_count=int(row["item_count"] or 0),
        )

    @staticmethod
    def _coerce_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    @classmethod
    def _coerce_payload(cls, value: Any) -> dict[str, str]:
        decoded = cls._coerce_json(value)
        if not isinstance(decoded, dict):
            return {}
        return {str(key): item for key, item in decoded.items() if isinstance(item, str)}


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresUnit]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            with _translated_errors():
                async with conn.transaction():
                    yield PostgresUnit(conn)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PostgresUnit]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            with _translated_errors():
                yield PostgresUnit(conn)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("RUNOPS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


@contextmanager
def _translated_errors() -> Iterator[None]:
    """Map asyncpg failures onto the repository error taxonomy."""
    try:
        yield
    except RepositoryError:
        raise
    except pg_exc.UndefinedTableError as exc:
        raise RepositorySchemaMissingError("pipeline tables are not provisioned; run migrations") from exc
    except pg_exc.IntegrityConstraintViolationError as exc:
        raise RepositoryConstraintError(f"constraint violation: {exc}") from exc
    except pg_exc.InvalidTextRepresentationError as exc:
        # malformed uuid in a lookup key
        raise RepositoryNotFoundError("record not found") from exc
    except pg_exc.DataError as exc:
        raise RepositoryValidationError(f"invalid value: {exc}") from exc
    except (OSError, pg_exc.InterfaceError, pg_exc.PostgresConnectionError) as exc:
        raise RepositoryUnavailableError("database unavailable") from exc


@lru_cache
def get_repository() -> PipelineRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from runops.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
