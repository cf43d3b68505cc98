import logging
from typing import Any

from runops.services.repository import PipelineRepository, RepositorySchemaMissingError

logger = logging.getLogger(__name__)

TODO_TEMPLATES: dict[str, tuple[str, str]] = {
    "airwork_unpublish": (
        "Unpublish stale job on Airwork",
        "1. End the listing on Airwork.\n2. Attach evidence of the unpublish.",
    ),
    "airwork_republish": (
        "Republish jobs if required",
        "1. Once the refresh upload is accepted, decide whether to republish.\n2. Attach evidence if republished.",
    ),
    "airwork_upload_file": (
        "Upload refresh run file to Airwork",
        "1. Upload the refresh run file to Airwork.\n2. Attach the acceptance evidence.",
    ),
    "airwork_download_sync": (
        "Download & sync newly created postings",
        "1. Download the Airwork result file.\n2. Sync newly created postings.\n3. Attach evidence.",
    ),
    "airwork_link_new_job_offer_id": (
        "Link new job_offer_id after refresh",
        "1. Look up the job_offer_id of each newly created posting.\n2. Link it to the job.\n3. Attach evidence.",
    ),
    "link_new_job_offer_id": (
        "Link new job_offer_id",
        "1. Look up the job_offer_id of each newly created posting.\n2. Link it to the job.\n3. Mark done with evidence.",
    ),
    "download_sync": (
        "Fix run errors",
        "1. Review the Airwork result file.\n2. Fix the reported errors and resubmit.\n3. Record the fix as evidence.",
    ),
}


async def ensure_todo(
    unit: Any,
    *,
    org_id: str,
    todo_type: str,
    client_id: str | None = None,
    job_id: str | None = None,
    run_id: int | None = None,
) -> str | None:
    """Insert an open todo unless one already exists for the same scope.

    Returns the new todo id, or None when an open one was already present.
    """
    existing = await unit.find_open_todo(
        org_id=org_id,
        todo_type=todo_type,
        client_id=client_id,
        job_id=job_id,
        run_id=run_id,
    )
    if existing:
        return None
    title, instructions = TODO_TEMPLATES[todo_type]
    return await unit.insert_todo(
        org_id=org_id,
        todo_type=todo_type,
        title=title,
        instructions=instructions,
        client_id=client_id,
        job_id=job_id,
        run_id=run_id,
    )


async def ensure_todo_best_effort(repository: PipelineRepository, **params: Any) -> str | None:
    # Todos are a side channel; an unprovisioned todos table must not fail the caller.
    try:
        async with repository.transaction() as unit:
            return await ensure_todo(unit, **params)
    except RepositorySchemaMissingError:
        logger.warning(
            "todo skipped; todos table missing type=%s run_id=%s",
            params.get("todo_type"),
            params.get("run_id"),
        )
        return None
