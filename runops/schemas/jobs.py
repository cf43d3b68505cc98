from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

RevisionStatus = Literal["draft", "in_review", "approved", "canceled"]
RevisionSource = Literal["manual", "ai", "system"]
ProposalFieldKey = Literal["title", "subtitle", "description", "job_type"]


class JobCreateRequest(BaseModel):
    client_id: str = Field(min_length=1)
    internal_title: str = Field(min_length=1, max_length=200)


class JobCreateOut(BaseModel):
    ok: bool = True
    message: str
    job_id: str
    posting_id: str


class DraftSaveRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=10000)
    subtitle: str | None = Field(default=None, max_length=200)
    working_location_id: str | None = Field(default=None, max_length=64)
    job_type: str | None = Field(default=None, max_length=200)
    occupation_id: str | None = Field(default=None, max_length=200)


class RevisionOut(BaseModel):
    id: str
    job_posting_id: str
    rev_no: int
    source: RevisionSource
    status: RevisionStatus
    payload: dict[str, str] = Field(default_factory=dict)
    payload_hash: str
    approved_by: str | None = None
    approved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RevisionActionOut(BaseModel):
    ok: bool = True
    message: str
    changed: bool = True
    revision: RevisionOut


class ProposalChange(BaseModel):
    field_key: ProposalFieldKey
    after: str = Field(max_length=10000)


class ProposalApplyRequest(BaseModel):
    proposal_id: str | None = None
    changes: list[ProposalChange] = Field(min_length=1)


class LocationCreateRequest(BaseModel):
    working_location_id: str = Field(min_length=1, max_length=64)
    name: str | None = Field(default=None, max_length=200)


class LocationCreateOut(BaseModel):
    ok: bool = True
    message: str
    id: str
