from __future__ import annotations

import logging
from dataclasses import dataclass

from qreports.core.config import get_settings
from qreports.core.errors import SqlRejectedError
from qreports.services.sql.parser import SqlglotParser, SqlParseError, SqlParser
from qreports.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

READ_ONLY_HINT = "Only SELECT or WITH ... SELECT statements are allowed"
_READ_KINDS = frozenset({"SELECT"})


@dataclass(frozen=True)
class GateDecision:
    accepted: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> "GateDecision":
        return cls(accepted=True)

    @classmethod
    def rejected(cls, reason: str) -> "GateDecision":
        return cls(accepted=False, reason=reason)


class SqlSafetyGate:
    """Admit a submission only when every statement in it is a pure read."""

    def __init__(
        self,
        parser: SqlParser | None = None,
        *,
        max_length: int | None = None,
        dialect: str | None = None,
    ) -> None:
        settings = get_settings()
        self._parser = parser or SqlglotParser()
        self._max_length = settings.query_max_length if max_length is None else max_length
        self._dialect = dialect or settings.sql_dialect

    @property
    def max_length(self) -> int:
        return self._max_length

    def validate(self, sql: str | None) -> GateDecision:
        if sql is None or not sql.strip():
            return GateDecision.rejected("Query must not be empty")
        if len(sql) > self._max_length:
            return GateDecision.rejected(f"Query exceeds the maximum length of {self._max_length} characters")
        try:
            statements = self._parser.parse(sql, self._dialect)
        except SqlParseError as exc:
            return GateDecision.rejected(f"Query could not be parsed: {exc}")
        if not statements:
            return GateDecision.rejected("Query must not be empty")

        for index, statement in enumerate(statements, start=1):
            if statement.kind not in _READ_KINDS:
                return GateDecision.rejected(
                    f"Only read statements are allowed (SELECT or WITH ... SELECT); "
                    f"statement {index} is {statement.kind}"
                )
            if statement.write_keywords:
                found = ", ".join(sorted(statement.write_keywords))
                return GateDecision.rejected(
                    f"Only read statements are allowed; statement {index} contains {found}"
                )
            if statement.has_into:
                return GateDecision.rejected(
                    f"Only read statements are allowed; statement {index} uses SELECT ... INTO"
                )
        return GateDecision.ok()

    def ensure_safe(self, sql: str | None) -> None:
        decision = self.validate(sql)
        if decision.accepted:
            return
        increment_counter("sql_rejected_total")
        logger.info("sql_rejected reason=%s", decision.reason)
        raise SqlRejectedError(decision.reason or "Query rejected", hint=READ_ONLY_HINT)
