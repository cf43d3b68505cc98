from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

RunType = Literal["update", "refresh"]
RunFileFormat = Literal["xlsx", "txt"]
RunStatus = Literal["draft", "file_generated", "executing", "done", "failed"]
RunStatusAction = Literal["executing", "done", "failed"]
RunItemAction = Literal["create", "update"]


class RunCreateRequest(BaseModel):
    client_id: str = Field(min_length=1)
    run_type: RunType = "update"
    file_format: RunFileFormat = "xlsx"
    include_latest_approved_only: bool = True


class RunCreateOut(BaseModel):
    ok: bool = True
    message: str
    run_id: int
    item_count: int


class RunOut(BaseModel):
    id: int
    client_id: str
    run_type: RunType
    status: RunStatus
    file_format: RunFileFormat | None = None
    file_blob_url: str | None = None
    file_sha256: str | None = None
    item_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RunItemOut(BaseModel):
    id: int
    job_posting_id: str
    job_revision_id: str
    job_id: str
    job_title: str
    action: RunItemAction
    job_offer_id: str | None = None
    payload: dict[str, str] = Field(default_factory=dict)
    validation: Any = None


class ValidationIssueOut(BaseModel):
    code: str
    message: str
    field_key: str | None = None
    detail: str | None = None


class ItemValidationOut(BaseModel):
    run_item_id: int | None
    hard_errors: list[ValidationIssueOut] = Field(default_factory=list)
    warnings: list[ValidationIssueOut] = Field(default_factory=list)
    imported: list[dict[str, Any]] = Field(default_factory=list)


class RunValidationOut(BaseModel):
    ok: bool = True
    message: str
    hard_error_count: int
    warning_count: int
    items: list[ItemValidationOut] = Field(default_factory=list)


class RunFileOut(BaseModel):
    ok: bool = True
    message: str
    run_id: int
    blob_url: str
    sha256: str
    file_name: str


class RunStatusPatchRequest(BaseModel):
    status: RunStatusAction


class RunStatusOut(BaseModel):
    ok: bool = True
    message: str
    run: RunOut
