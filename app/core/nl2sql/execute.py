# app/core/nl2sql/execute.py
"""
EXECUTE MODULE - Run a validated statement with hard limits

Purpose:
    1. Acquire a connection and run the statement under a wall-clock deadline
    2. Stream rows one at a time and stop at the row cap
    3. Convert every value into something json.dumps accepts
    4. Classify the result shape (text / table) and serialize the rows

Data Flow:
    statement → connect() → stream() → fetchone() x N → to_json_safe()
              → classify_result() → serialize_rows() → ExecutionResult

Every failure is reported once and never retried:
    ConnectionAcquireError, StatementError, RowIterationError,
    RowConversionError, QueryTimeoutError
"""

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncResult

from app.core.nl2sql.errors import (
    ConnectionAcquireError,
    ExecutionError,
    QueryTimeoutError,
    RowConversionError,
    RowIterationError,
    StatementError,
)
from app.core.nl2sql.results import Failed, Ok, StageResult
from app.core.schemas import ResultFormat

logger = logging.getLogger(__name__)


# text() treats ":name" as a bind parameter; generated SQL has none
_BIND_LIKE = re.compile(r"(?<![:\w$\\]):(?=[\w$])")


@dataclass
class ExecutionResult:
    columns: List[str]
    rows: List[Dict[str, Any]] = field(default_factory=list)
    truncated: bool = False
    result_format: str = ResultFormat.TEXT.value
    payload: Optional[str] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)


# ============================================================================
# VALUE CONVERSION
# ============================================================================


def to_json_safe(value: Any) -> Any:
    """
    Convert one driver value into a JSON-safe value.

    Handles:
        - bytes / bytearray / memoryview → str
        - datetime → ISO-8601 with offset (naive values are taken as UTC)
        - date → midnight UTC timestamp
        - time → ISO string
        - Decimal / UUID → str (numeric text as the driver reports it)
        - NaN / Infinity → None (JSON has no such numbers)
        - None and other scalars → unchanged

    Examples:
        b"abc" → "abc"
        date(2024, 1, 1) → "2024-01-01T00:00:00+00:00"
    """
    if value is None:
        return None

    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()

    if isinstance(value, date):
        return datetime.combine(value, dt_time.min, tzinfo=timezone.utc).isoformat()

    if isinstance(value, dt_time):
        return value.isoformat()

    if isinstance(value, float) and not math.isfinite(value):
        return None

    if isinstance(value, (Decimal, UUID)):
        return str(value)

    return value


def convert_row(columns: Sequence[str], row: Sequence[Any]) -> Dict[str, Any]:
    return {column: to_json_safe(value) for column, value in zip(columns, row)}


def classify_result(row_count: int, column_count: int) -> str:
    """
    Shape of a successful result.

    Zero rows, or a single value (1 row x 1 column), reads as text;
    everything else is a table.
    """
    if row_count == 0:
        return ResultFormat.TEXT.value
    if row_count == 1 and column_count == 1:
        return ResultFormat.TEXT.value
    return ResultFormat.TABLE.value


def serialize_rows(rows: List[Dict[str, Any]]) -> str:
    try:
        return json.dumps(rows, allow_nan=False)
    except (TypeError, ValueError) as error:
        raise RowConversionError(f"failed to marshal results: {error}") from error


# ============================================================================
# EXECUTOR
# ============================================================================


class BoundedExecutor:
    """
    Runs already validated statements against the store.

    Args:
        engine: Async engine of the store the statements read from
        timeout_seconds: Default wall-clock budget per statement
        max_rows: Row cap; rows past it are discarded, not an error
    """

    def __init__(self, engine: AsyncEngine, timeout_seconds: float, max_rows: int):
        if max_rows <= 0:
            raise ValueError("max_rows must be positive")
        self.engine = engine
        self.timeout_seconds = timeout_seconds
        self.max_rows = max_rows

    async def run(
        self, statement: str, timeout: Optional[float] = None
    ) -> StageResult[ExecutionResult]:
        """
        Execute a statement and return Ok(ExecutionResult) or Failed(reason).

        Args:
            statement: SQL that already passed the read-only validator
            timeout: Remaining budget in seconds (defaults to timeout_seconds)
        """
        budget = self.timeout_seconds if timeout is None else timeout

        try:
            if budget <= 0:
                raise QueryTimeoutError("query timed out before execution started")
            result = await asyncio.wait_for(
                self._execute(statement, budget), timeout=budget
            )
        except asyncio.TimeoutError:
            error = QueryTimeoutError(f"query exceeded the {budget:.1f}s timeout")
            return Failed(str(error), error)
        except ExecutionError as error:
            return Failed(str(error), error)

        logger.info(
            f"Statement returned {result.row_count} rows "
            f"({result.result_format}{', truncated' if result.truncated else ''})"
        )
        return Ok(result)

    async def _execute(self, statement: str, budget: float) -> ExecutionResult:
        try:
            conn = await self.engine.connect()
        except Exception as error:
            raise ConnectionAcquireError(
                f"failed to get database connection: {error}"
            ) from error

        try:
            try:
                await self._restrict(conn, budget)
                result = await conn.stream(text(_BIND_LIKE.sub(r"\\:", statement)))
            except Exception as error:
                raise StatementError(f"query execution error: {error}") from error

            try:
                columns = list(result.keys())
                rows, truncated = await self._consume(result, columns)
            finally:
                await result.close()
        finally:
            # read-only work, nothing to commit
            await conn.close()

        serialized = serialize_rows(rows)
        return ExecutionResult(
            columns=columns,
            rows=rows,
            truncated=truncated,
            result_format=classify_result(len(rows), len(columns)),
            payload=serialized if rows else None,
        )

    async def _restrict(self, conn: AsyncConnection, budget: float) -> None:
        """Let PostgreSQL enforce read-only access and the deadline as well."""
        if conn.dialect.name != "postgresql":
            return
        await conn.exec_driver_sql("SET TRANSACTION READ ONLY")
        await conn.exec_driver_sql(
            f"SET LOCAL statement_timeout = {max(int(budget * 1000), 1)}"
        )

    async def _consume(self, result: AsyncResult, columns: List[str]):
        rows: List[Dict[str, Any]] = []
        truncated = False

        while True:
            try:
                row = await result.fetchone()
            except Exception as error:
                raise RowIterationError(f"row iteration error: {error}") from error

            if row is None:
                break
            if len(rows) >= self.max_rows:
                truncated = True
                break

            try:
                rows.append(convert_row(columns, row))
            except Exception as error:
                raise RowConversionError(f"failed to scan row: {error}") from error

        return rows, truncated
