from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from qreports.core.config import get_settings
from qreports.core.errors import (
    QueryExecutionError,
    QueryTimeoutError,
    RowLimitExceededError,
    ValidationError,
)
from qreports.services.sql.safety import SqlSafetyGate
from qreports.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

NARROW_QUERY_HINT = "Add a LIMIT or WHERE clause to narrow the result"


class QueryResult(BaseModel):
    columns: list[str]
    rows: list[dict[str, Any]]
    row_count: int
    total_rows: int
    total_pages: int
    page: int
    page_size: int
    duration_ms: int


def strip_trailing_separator(sql: str) -> str:
    # Drop one trailing ';' so the statement can sit inside a subquery.
    stripped = sql.strip()
    if stripped.endswith(";"):
        stripped = stripped[:-1].rstrip()
    return stripped


def _escape_bind_markers(sql: str) -> str:
    # text() treats ":name" as a bind parameter; user SQL carries none of ours.
    return sql.replace(":", "\\:")


def count_statement(sql: str) -> str:
    return f"SELECT COUNT(*) AS total FROM ({sql}) AS count_query_wrapper"


def data_statement(sql: str) -> str:
    return f"SELECT * FROM ({sql}) AS data_query_wrapper LIMIT :limit OFFSET :offset"


def _driver_message(exc: SQLAlchemyError) -> str:
    # Surface the database's own message without SQL text or stack traces.
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        args = getattr(exc.orig, "args", ())
        if len(args) >= 2 and isinstance(args[1], str):
            return args[1]
        return str(exc.orig).splitlines()[0] if str(exc.orig) else type(exc.orig).__name__
    return type(exc).__name__


class QueryExecutor:
    """Run gated read queries with pagination, a deadline and a row ceiling."""

    def __init__(
        self,
        gate: SqlSafetyGate | None = None,
        *,
        timeout_s: float | None = None,
        max_rows: int | None = None,
        max_page_size: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._gate = gate or SqlSafetyGate()
        self._timeout_s = settings.query_timeout_s if timeout_s is None else timeout_s
        self._max_rows = settings.query_max_result_rows if max_rows is None else max_rows
        self._max_page_size = settings.query_max_page_size if max_page_size is None else max_page_size
        self._clock = clock or time.monotonic

    async def execute(self, sql: str, pool: AsyncEngine, page: int = 1, page_size: int = 100) -> QueryResult:
        started = self._clock()
        self._gate.ensure_safe(sql)
        self._check_paging(page, page_size)
        statement = _escape_bind_markers(strip_trailing_separator(sql))

        try:
            total_rows, columns, rows = await asyncio.wait_for(
                self._run(pool, statement, page, page_size),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError as exc:
            increment_counter("query_timeout_total")
            logger.info("query_timeout timeout_s=%s", self._timeout_s)
            raise QueryTimeoutError(
                f"Query exceeded the time limit of {self._timeout_s:g} seconds",
                hint=NARROW_QUERY_HINT,
            ) from exc
        except SQLAlchemyError as exc:
            increment_counter("query_failed_total")
            logger.info("query_failed error=%s", type(exc).__name__)
            raise QueryExecutionError(f"Query execution failed: {_driver_message(exc)}") from exc

        # The ceiling counts fetched rows, so it only bites when max_page_size is configured above it.
        if len(rows) > self._max_rows:
            increment_counter("query_row_limit_total")
            raise RowLimitExceededError(
                f"Query returned more than {self._max_rows} rows",
                hint=NARROW_QUERY_HINT,
            )

        duration_ms = int((self._clock() - started) * 1000)
        increment_counter("query_executed_total")
        return QueryResult(
            columns=columns,
            rows=rows,
            row_count=len(rows),
            total_rows=total_rows,
            total_pages=math.ceil(total_rows / page_size),
            page=page,
            page_size=page_size,
            duration_ms=duration_ms,
        )

    def _check_paging(self, page: int, page_size: int) -> None:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if page_size < 1 or page_size > self._max_page_size:
            raise ValidationError(
                f"page_size must be between 1 and {self._max_page_size}",
                hint="Request smaller pages",
            )

    async def _run(
        self,
        pool: AsyncEngine,
        statement: str,
        page: int,
        page_size: int,
    ) -> tuple[int, list[str], list[dict[str, Any]]]:
        async with pool.connect() as conn:
            count_result = await conn.execute(text(count_statement(statement)))
            total_rows = int(count_result.scalar_one() or 0)
            data_result = await conn.execute(
                text(data_statement(statement)),
                {"limit": page_size, "offset": (page - 1) * page_size},
            )
            columns = list(data_result.keys())
            rows = [dict(row) for row in data_result.mappings().all()]
        return total_rows, columns, rows


_executor: QueryExecutor | None = None


def get_query_executor() -> QueryExecutor:
    global _executor
    if _executor is None:
        _executor = QueryExecutor()
    return _executor


def reset_query_executor() -> None:
    global _executor
    _executor = None
