from __future__ import annotations

import asyncio
import math

import pytest

from qreports.core.errors import (
    QueryExecutionError,
    QueryTimeoutError,
    RowLimitExceededError,
    SqlRejectedError,
    ValidationError,
)
from qreports.services.query.executor import (
    QueryExecutor,
    count_statement,
    data_statement,
    strip_trailing_separator,
)
from qreports.services.telemetry import counters_snapshot
from qreports.tests.utils.fakes import seed_report_table, sqlite_engine


@pytest.fixture
async def report_engine(tmp_path):
    engine = sqlite_engine(tmp_path / "tenant.db")
    await seed_report_table(engine, rows=15)
    yield engine
    await engine.dispose()


def test_wrappers_nest_the_original_statement() -> None:
    assert count_statement("SELECT 1") == "SELECT COUNT(*) AS total FROM (SELECT 1) AS count_query_wrapper"
    assert data_statement("SELECT 1").startswith("SELECT * FROM (SELECT 1) AS data_query_wrapper LIMIT")


def test_strip_trailing_separator_removes_only_one() -> None:
    assert strip_trailing_separator("SELECT 1;  ") == "SELECT 1"
    assert strip_trailing_separator("SELECT 1") == "SELECT 1"
    assert strip_trailing_separator("SELECT ';'") == "SELECT ';'"


@pytest.mark.asyncio
async def test_first_page_of_fifteen_rows(report_engine) -> None:
    executor = QueryExecutor(timeout_s=5)
    result = await executor.execute("SELECT id, name FROM t WHERE id = 1", report_engine, page=1, page_size=10)
    assert result.columns == ["id", "name"]
    assert result.row_count == 10
    assert len(result.rows) <= 10
    assert result.total_rows == 15
    assert result.total_pages == 2
    assert result.rows[0] == {"id": 1, "name": "row-00"}


@pytest.mark.asyncio
async def test_last_page_holds_the_remainder(report_engine) -> None:
    executor = QueryExecutor(timeout_s=5)
    result = await executor.execute("SELECT id, name FROM t ORDER BY name;", report_engine, page=2, page_size=10)
    assert result.row_count == 5
    assert [row["name"] for row in result.rows][0] == "row-10"
    assert result.total_pages == math.ceil(result.total_rows / 10)


@pytest.mark.asyncio
async def test_page_past_the_end_is_empty(report_engine) -> None:
    executor = QueryExecutor(timeout_s=5)
    result = await executor.execute("SELECT id FROM t", report_engine, page=5, page_size=10)
    assert result.rows == []
    assert result.total_rows == 15


@pytest.mark.asyncio
async def test_colons_in_literals_are_not_bind_parameters(report_engine) -> None:
    executor = QueryExecutor(timeout_s=5)
    result = await executor.execute("SELECT 'a:b' AS label FROM t", report_engine, page=1, page_size=1)
    assert result.rows == [{"label": "a:b"}]


@pytest.mark.asyncio
async def test_rejected_sql_never_reaches_the_database() -> None:
    class ExplodingPool:
        def connect(self):
            raise AssertionError("pool must not be touched")

    executor = QueryExecutor(timeout_s=5)
    with pytest.raises(SqlRejectedError):
        await executor.execute("DROP TABLE t", ExplodingPool())


@pytest.mark.asyncio
@pytest.mark.parametrize("page,page_size", [(0, 10), (1, 0), (1, 1001)])
async def test_paging_bounds(report_engine, page: int, page_size: int) -> None:
    executor = QueryExecutor(timeout_s=5, max_page_size=1000)
    with pytest.raises(ValidationError):
        await executor.execute("SELECT id FROM t", report_engine, page=page, page_size=page_size)


@pytest.mark.asyncio
async def test_row_ceiling_is_all_or_nothing(report_engine) -> None:
    executor = QueryExecutor(timeout_s=5, max_rows=5)
    with pytest.raises(RowLimitExceededError) as excinfo:
        await executor.execute("SELECT id FROM t", report_engine, page=1, page_size=10)
    assert excinfo.value.hint


@pytest.mark.asyncio
async def test_row_ceiling_counts_the_fetched_page_not_the_total(report_engine) -> None:
    executor = QueryExecutor(timeout_s=5, max_rows=5)
    result = await executor.execute("SELECT id FROM t", report_engine, page=1, page_size=5)
    assert result.row_count == 5
    assert result.total_rows == 15


@pytest.mark.asyncio
async def test_driver_errors_are_normalized(report_engine) -> None:
    executor = QueryExecutor(timeout_s=5)
    with pytest.raises(QueryExecutionError) as excinfo:
        await executor.execute("SELECT * FROM missing_table", report_engine)
    assert excinfo.value.message.startswith("Query execution failed: ")
    assert "missing_table" in excinfo.value.message
    assert "Traceback" not in excinfo.value.message


class _SlowConnection:
    async def __aenter__(self):
        await asyncio.sleep(5)
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None


class _SlowPool:
    def connect(self) -> _SlowConnection:
        return _SlowConnection()


@pytest.mark.asyncio
async def test_timeout_is_classified_and_returns_nothing() -> None:
    executor = QueryExecutor(timeout_s=0.05)
    with pytest.raises(QueryTimeoutError) as excinfo:
        await executor.execute("SELECT id FROM t", _SlowPool())
    assert excinfo.value.status_code == 408
    assert excinfo.value.code == "QUERY_TIMEOUT"
    assert counters_snapshot()["query_timeout_total"] == 1
