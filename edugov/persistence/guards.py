from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import re
from typing import Any, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Executable


logger = logging.getLogger(__name__)

_PG_MISSING_RELATION = re.compile(r'relation "[^"]+" does not exist')


def is_missing_table_error(exc: BaseException) -> bool:
    # Only absent tables count; a missing column is schema drift and must surface.
    message = str(exc).lower()
    if "undefinedtableerror" in message or "no such table" in message:
        return True
    return _PG_MISSING_RELATION.search(message) is not None


@asynccontextmanager
async def soft_dependency(session: AsyncSession, dependency: str, **context: Any) -> AsyncIterator[None]:
    """Run a non-essential write inside a savepoint and log instead of raising.

    Only the savepoint is rolled back on failure, so the caller's enclosing
    transaction (the upload, the review) still commits.
    """
    try:
        async with session.begin_nested():
            yield
    except SQLAlchemyError as exc:
        logger.warning(
            "soft_dependency_failed dependency=%s missing_table=%s context=%s",
            dependency,
            is_missing_table_error(exc),
            context,
            exc_info=exc,
        )


async def scalar_or_default(
    session: AsyncSession,
    stmt: Executable,
    *,
    default: Any = 0,
    source: str,
) -> Any:
    # Treat an absent collaborator table as "no data" for read paths.
    try:
        async with session.begin_nested():
            value = (await session.execute(stmt)).scalar()
    except SQLAlchemyError as exc:
        if not is_missing_table_error(exc):
            raise
        logger.warning("source_table_missing source=%s", source)
        return default
    return default if value is None else value


async def rows_or_empty(session: AsyncSession, stmt: Executable, *, source: str) -> list[Any]:
    try:
        async with session.begin_nested():
            return list((await session.execute(stmt)).all())
    except SQLAlchemyError as exc:
        if not is_missing_table_error(exc):
            raise
        logger.warning("source_table_missing source=%s", source)
        return []
