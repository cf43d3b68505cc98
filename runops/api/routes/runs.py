from dataclasses import asdict

from fastapi import APIRouter, Depends, status
from fastapi.responses import RedirectResponse

from runops.api.deps import repository_errors, require_org
from runops.core.config import get_settings
from runops.core.security import get_human_principal
from runops.schemas.runs import (
    ItemValidationOut,
    RunCreateOut,
    RunCreateRequest,
    RunFileOut,
    RunItemOut,
    RunOut,
    RunStatusOut,
    RunStatusPatchRequest,
    RunValidationOut,
)
from runops.services.blob import get_blob_store
from runops.services.exporter import FileGenerator
from runops.services.repository import get_repository
from runops.services.runs import RunService
from runops.services.validation import RunValidationSummary

router = APIRouter()


def get_run_service(repository=Depends(get_repository)) -> RunService:
    return RunService(repository, channel=get_settings().channel)


def get_file_generator(repository=Depends(get_repository), blob_store=Depends(get_blob_store)) -> FileGenerator:
    return FileGenerator(repository, blob_store)


def _validation_out(summary: RunValidationSummary, message: str) -> RunValidationOut:
    return RunValidationOut(
        message=message,
        hard_error_count=summary.hard_error_count,
        warning_count=summary.warning_count,
        items=[
            ItemValidationOut(run_item_id=item.run_item_id, **item.to_stored())
            for item in summary.items
        ],
    )


@router.post("", response_model=RunCreateOut, status_code=status.HTTP_201_CREATED)
async def create_run(
    payload: RunCreateRequest,
    principal=Depends(get_human_principal),
    service: RunService = Depends(get_run_service),
) -> RunCreateOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        created = await service.create_run(
            org_id,
            payload.client_id,
            run_type=payload.run_type,
            file_format=payload.file_format,
            include_latest_approved_only=payload.include_latest_approved_only,
        )
    return RunCreateOut(message="run created", run_id=created.run_id, item_count=created.item_count)


@router.get("", response_model=list[RunOut])
async def list_runs(
    principal=Depends(get_human_principal),
    service: RunService = Depends(get_run_service),
) -> list[RunOut]:
    org_id = require_org(principal, {"pipeline:read"})
    with repository_errors():
        runs = await service.list_runs(org_id)
    return [RunOut(**asdict(run)) for run in runs]


@router.get("/{run_id}", response_model=RunOut)
async def get_run(
    run_id: int,
    principal=Depends(get_human_principal),
    service: RunService = Depends(get_run_service),
) -> RunOut:
    org_id = require_org(principal, {"pipeline:read"})
    with repository_errors():
        run = await service.get_run(org_id, run_id)
    return RunOut(**asdict(run))


@router.get("/{run_id}/items", response_model=list[RunItemOut])
async def list_run_items(
    run_id: int,
    principal=Depends(get_human_principal),
    service: RunService = Depends(get_run_service),
) -> list[RunItemOut]:
    org_id = require_org(principal, {"pipeline:read"})
    with repository_errors():
        items = await service.list_items(org_id, run_id)
    return [RunItemOut(**asdict(item)) for item in items]


@router.get("/{run_id}/validation", response_model=RunValidationOut)
async def preview_validation(
    run_id: int,
    principal=Depends(get_human_principal),
    service: RunService = Depends(get_run_service),
) -> RunValidationOut:
    org_id = require_org(principal, {"pipeline:read"})
    with repository_errors():
        summary = await service.preview(org_id, run_id)
    return _validation_out(summary, "validation preview")


@router.post("/{run_id}/validate", response_model=RunValidationOut)
async def validate_run(
    run_id: int,
    principal=Depends(get_human_principal),
    service: RunService = Depends(get_run_service),
) -> RunValidationOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        summary = await service.validate_run(org_id, run_id)
    return _validation_out(summary, "validation stored")


@router.post("/{run_id}/file", response_model=RunFileOut)
async def generate_file(
    run_id: int,
    principal=Depends(get_human_principal),
    generator: FileGenerator = Depends(get_file_generator),
) -> RunFileOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        generated = await generator.generate(org_id, run_id)
    return RunFileOut(
        message="file generated",
        run_id=generated.run_id,
        blob_url=generated.blob_url,
        sha256=generated.sha256,
        file_name=generated.file_name,
    )


@router.get("/{run_id}/download")
async def download_file(
    run_id: int,
    principal=Depends(get_human_principal),
    service: RunService = Depends(get_run_service),
) -> RedirectResponse:
    org_id = require_org(principal, {"pipeline:read"})
    with repository_errors():
        url = await service.download_url(org_id, run_id)
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.patch("/{run_id}/status", response_model=RunStatusOut)
async def update_run_status(
    run_id: int,
    payload: RunStatusPatchRequest,
    principal=Depends(get_human_principal),
    service: RunService = Depends(get_run_service),
) -> RunStatusOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        run = await service.update_status(org_id, run_id, payload.status)
    return RunStatusOut(message=f"run marked {run.status}", run=RunOut(**asdict(run)))
