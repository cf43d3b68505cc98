from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

TITLE_MAX = 200
SUBTITLE_MAX = 200
DESCRIPTION_MAX = 10000
NEAR_LIMIT_RATIO = 0.9

LENGTH_LIMITS: dict[str, int] = {
    "title": TITLE_MAX,
    "subtitle": SUBTITLE_MAX,
    "description": DESCRIPTION_MAX,
}
OPTIONAL_FIELDS = ("subtitle", "working_location_id", "job_type")


@dataclass(slots=True)
class ValidationIssue:
    code: str
    message: str
    field_key: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message, "field_key": self.field_key}
        if self.detail is not None:
            data["detail"] = self.detail
        return data


@dataclass(slots=True)
class ValidationMasters:
    """Reference data for one client. Empty code/field masters impose no constraint."""

    location_ids: set[str] = field(default_factory=set)
    job_type_codes: set[str] = field(default_factory=set)
    field_keys: set[str] = field(default_factory=set)


@dataclass(slots=True)
class ItemValidation:
    run_item_id: int | None
    hard_errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    imported: list[dict[str, Any]] = field(default_factory=list)

    def to_stored(self) -> dict[str, Any]:
        return {
            "hard_errors": [issue.to_dict() for issue in self.hard_errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "imported": list(self.imported),
        }


@dataclass(slots=True)
class RunValidationSummary:
    items: list[ItemValidation] = field(default_factory=list)

    @property
    def hard_error_count(self) -> int:
        return sum(len(item.hard_errors) for item in self.items)

    @property
    def warning_count(self) -> int:
        return sum(len(item.warnings) for item in self.items)

    @property
    def blocked(self) -> bool:
        return self.hard_error_count > 0


def near_limit_threshold(cap: int) -> int:
    return math.floor(cap * NEAR_LIMIT_RATIO)


def resolve_job_offer_id(payload: Mapping[str, Any] | None, posting_job_offer_id: str | None) -> str | None:
    value = _payload_text(payload, "job_offer_id")
    if value:
        return value
    return posting_job_offer_id or None


def validate_item(
    payload: Mapping[str, Any] | None,
    *,
    action: str,
    posting_job_offer_id: str | None,
    masters: ValidationMasters,
    run_item_id: int | None = None,
) -> ItemValidation:
    result = ItemValidation(run_item_id=run_item_id)
    hard, warn = result.hard_errors, result.warnings

    if action == "update" and not resolve_job_offer_id(payload, posting_job_offer_id):
        hard.append(ValidationIssue("required_job_offer_id", "job_offer_id is not set", "job_offer_id"))

    for key in ("title", "description"):
        value = _payload_text(payload, key)
        if value is None or not value.strip():
            hard.append(ValidationIssue(f"required_{key}", f"{key} is not set", key))
        else:
            _check_length(key, value, hard, warn)

    subtitle = _payload_text(payload, "subtitle")
    if subtitle:
        _check_length("subtitle", subtitle, hard, warn)

    location_id = _payload_text(payload, "working_location_id")
    if location_id and location_id not in masters.location_ids:
        hard.append(
            ValidationIssue(
                "invalid_working_location",
                "working_location_id is not registered for this client",
                "working_location_id",
            )
        )

    job_type = _payload_text(payload, "job_type")
    if job_type and masters.job_type_codes and job_type not in masters.job_type_codes:
        hard.append(ValidationIssue("invalid_job_type", "job_type is not an active code", "job_type"))

    for key in OPTIONAL_FIELDS:
        value = _payload_text(payload, key)
        if value is None or not value.strip():
            warn.append(ValidationIssue(f"missing_{key}", f"{key} is empty", key))

    if masters.field_keys and payload:
        for key in payload:
            if key not in masters.field_keys:
                warn.append(ValidationIssue("unknown_field_key", f"unknown field: {key}", key))

    return result


def read_imported_errors(stored: Any) -> list[dict[str, Any]]:
    """Imported errors from a stored validation blob.

    Accepts the current ``{"imported": [...]}`` shape and a bare list.
    """
    if isinstance(stored, Mapping):
        stored = stored.get("imported")
    if not isinstance(stored, list):
        return []
    return [dict(entry) for entry in stored if isinstance(entry, Mapping) and entry.get("message")]


def _check_length(key: str, value: str, hard: list[ValidationIssue], warn: list[ValidationIssue]) -> None:
    cap = LENGTH_LIMITS[key]
    length = len(value)
    if length > cap:
        hard.append(ValidationIssue(f"length_{key}", f"{key} must be at most {cap} characters", key))
    elif length >= near_limit_threshold(cap):
        warn.append(
            ValidationIssue(
                f"near_limit_{key}",
                f"{key} is close to the {cap} character limit",
                key,
                detail=f"{length}/{cap}",
            )
        )


def _payload_text(payload: Mapping[str, Any] | None, key: str) -> str | None:
    if not payload:
        return None
    value = payload.get(key)
    return value if isinstance(value, str) else None
