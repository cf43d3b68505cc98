from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from runops.api.deps import repository_errors, require_org
from runops.core.config import Settings, get_settings
from runops.core.security import get_human_principal
from runops.schemas.imports import ExportSyncOut, ResultImportOut
from runops.services.blob import get_blob_store
from runops.services.imports import ImportReconciler
from runops.services.repository import get_repository

router = APIRouter()


def get_import_reconciler(repository=Depends(get_repository), blob_store=Depends(get_blob_store)) -> ImportReconciler:
    return ImportReconciler(repository, blob_store, channel=get_settings().channel)


async def read_upload(upload: UploadFile, settings: Settings) -> bytes:
    content = await upload.read(settings.max_upload_bytes + 1)
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"upload exceeds {settings.max_upload_bytes} bytes",
        )
    return content


@router.post("/{run_id}/imports/export-sync", response_model=ExportSyncOut)
async def import_export_sync(
    run_id: int,
    file: UploadFile = File(...),
    principal=Depends(get_human_principal),
    settings: Settings = Depends(get_settings),
    reconciler: ImportReconciler = Depends(get_import_reconciler),
) -> ExportSyncOut:
    org_id = require_org(principal, {"pipeline:write"})
    content = await read_upload(file, settings)
    with repository_errors():
        summary = await reconciler.import_export_sync(
            org_id,
            run_id,
            user_id=principal.actor_id,
            file_name=file.filename or "export",
            content=content,
            content_type=file.content_type or "application/octet-stream",
        )
    return ExportSyncOut(
        message=f"matched {summary.matched} rows",
        matched=summary.matched,
        updated=summary.updated,
        unmatched=summary.unmatched,
        blob_url=summary.blob_url,
    )


@router.post("/{run_id}/imports/results", response_model=ResultImportOut)
async def import_results(
    run_id: int,
    file: UploadFile = File(...),
    principal=Depends(get_human_principal),
    settings: Settings = Depends(get_settings),
    reconciler: ImportReconciler = Depends(get_import_reconciler),
) -> ResultImportOut:
    org_id = require_org(principal, {"pipeline:write"})
    content = await read_upload(file, settings)
    with repository_errors():
        summary = await reconciler.import_results(
            org_id,
            run_id,
            user_id=principal.actor_id,
            file_name=file.filename or "results",
            content=content,
            content_type=file.content_type or "application/octet-stream",
        )
    return ResultImportOut(
        message=f"imported {summary.error_count} errors",
        error_count=summary.error_count,
        matched_errors=summary.matched_errors,
        affected_items=summary.affected_items,
        blob_url=summary.blob_url,
    )
