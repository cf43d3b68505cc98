from __future__ import annotations

import asyncio

import pytest
from asyncpg import exceptions as pg_exc

from runops.services.repository import (
    PostgresUnit,
    RepositoryConstraintError,
    RepositoryNotFoundError,
    RepositorySchemaMissingError,
    RepositoryValidationError,
)


class _FailingConnection:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    async def fetchrow(self, query: str, *args: object) -> None:
        raise self.exc


def _get_run_raising(exc: Exception) -> None:
    asyncio.run(PostgresUnit(_FailingConnection(exc)).get_run("org-1", 1))


def test_malformed_key_is_reported_as_not_found() -> None:
    with pytest.raises(RepositoryNotFoundError):
        _get_run_raising(pg_exc.InvalidTextRepresentationError("invalid input syntax for type uuid"))


def test_other_data_errors_are_validation_errors() -> None:
    with pytest.raises(RepositoryValidationError):
        _get_run_raising(pg_exc.StringDataRightTruncationError("value too long for type character varying(200)"))
    with pytest.raises(RepositoryValidationError):
        _get_run_raising(pg_exc.NumericValueOutOfRangeError("integer out of range"))


def test_integrity_and_schema_errors_keep_their_mapping() -> None:
    with pytest.raises(RepositoryConstraintError):
        _get_run_raising(pg_exc.UniqueViolationError("duplicate key value"))
    with pytest.raises(RepositorySchemaMissingError):
        _get_run_raising(pg_exc.UndefinedTableError('relation "runs" does not exist'))
