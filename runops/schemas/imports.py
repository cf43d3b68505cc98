from pydantic import BaseModel, Field


class ExportSyncOut(BaseModel):
    ok: bool = True
    message: str
    matched: int
    updated: int
    unmatched: int
    blob_url: str | None = None


class ResultImportOut(BaseModel):
    ok: bool = True
    message: str
    error_count: int
    matched_errors: int
    affected_items: int
    blob_url: str | None = None


class FreshnessSweepOut(BaseModel):
    ok: bool = True
    message: str
    processed_postings: int = 0
    created_postings: int = 0
    created_runs: int = 0
    created_todos: int = 0
    skipped_already_planned: int = 0


class CsvLineErrorOut(BaseModel):
    line: int
    message: str


class MasterUploadOut(BaseModel):
    ok: bool
    message: str
    applied: int = 0
    errors: list[CsvLineErrorOut] = Field(default_factory=list)
