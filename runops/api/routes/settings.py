from dataclasses import asdict

from fastapi import APIRouter, Depends, File, UploadFile, status

from runops.api.deps import repository_errors, require_org
from runops.api.routes.imports import read_upload
from runops.core.config import Settings, get_settings
from runops.core.security import get_human_principal
from runops.schemas.imports import CsvLineErrorOut, MasterUploadOut
from runops.schemas.jobs import LocationCreateOut, LocationCreateRequest
from runops.services.masters import MasterService, MasterUploadResult
from runops.services.repository import get_repository

router = APIRouter()


def get_master_service(repository=Depends(get_repository)) -> MasterService:
    return MasterService(repository)


def _upload_out(result: MasterUploadResult, label: str) -> MasterUploadOut:
    if result.errors:
        return MasterUploadOut(
            ok=False,
            message=f"{label} rejected with {len(result.errors)} errors",
            errors=[CsvLineErrorOut(**asdict(error)) for error in result.errors],
        )
    return MasterUploadOut(ok=True, message=f"{label} upserted", applied=result.applied)


@router.post("/settings/fields/upload", response_model=MasterUploadOut)
async def upload_field_master(
    file: UploadFile = File(...),
    principal=Depends(get_human_principal),
    settings: Settings = Depends(get_settings),
    service: MasterService = Depends(get_master_service),
) -> MasterUploadOut:
    require_org(principal, {"settings:write"})
    content = await read_upload(file, settings)
    with repository_errors():
        result = await service.upload_fields(content)
    return _upload_out(result, "field master")


@router.post("/settings/codes/upload", response_model=MasterUploadOut)
async def upload_code_master(
    file: UploadFile = File(...),
    principal=Depends(get_human_principal),
    settings: Settings = Depends(get_settings),
    service: MasterService = Depends(get_master_service),
) -> MasterUploadOut:
    require_org(principal, {"settings:write"})
    content = await read_upload(file, settings)
    with repository_errors():
        result = await service.upload_codes(content)
    return _upload_out(result, "code master")


@router.post(
    "/clients/{client_id}/locations",
    response_model=LocationCreateOut,
    status_code=status.HTTP_201_CREATED,
)
async def add_location(
    client_id: str,
    payload: LocationCreateRequest,
    principal=Depends(get_human_principal),
    service: MasterService = Depends(get_master_service),
) -> LocationCreateOut:
    org_id = require_org(principal, {"pipeline:write"})
    with repository_errors():
        location_id = await service.add_location(org_id, client_id, payload.working_location_id, payload.name)
    return LocationCreateOut(message="location added", id=location_id)
