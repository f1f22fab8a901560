from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import sqlglot
from sqlglot import exp
from sqlglot.dialects.dialect import Dialect
from sqlglot.errors import ParseError, TokenError
from sqlglot.tokens import TokenType


class SqlParseError(Exception):
    """Submission does not form valid statements under the dialect grammar."""


@dataclass(frozen=True)
class ParsedStatement:
    # Top-level operation, e.g. SELECT, INSERT, DROP.
    kind: str
    # Data- or schema-modifying operations nested anywhere in the statement.
    write_keywords: frozenset[str] = field(default_factory=frozenset)
    # SELECT ... INTO writes a table, variable or file.
    has_into: bool = False
    text: str = ""


class SqlParser(Protocol):
    def parse(self, sql: str, dialect: str) -> list[ParsedStatement]:
        ...


_READ_ROOTS = (exp.Select, exp.Union, exp.Except, exp.Intersect)
_WRITE_NODES = (exp.Insert, exp.Update, exp.Delete, exp.Merge, exp.Create, exp.Drop, exp.Command)
# Tokens that need an operand after them; a clause keyword or the end right behind one is a syntax error.
_NEEDS_OPERAND = frozenset({TokenType.COMMA, TokenType.SELECT, TokenType.FROM, TokenType.WHERE})
_CLAUSE_TOKENS = frozenset(
    {
        TokenType.FROM,
        TokenType.WHERE,
        TokenType.GROUP_BY,
        TokenType.ORDER_BY,
        TokenType.HAVING,
        TokenType.LIMIT,
        TokenType.UNION,
        TokenType.EXCEPT,
        TokenType.INTERSECT,
        TokenType.COMMA,
        TokenType.R_PAREN,
        TokenType.SEMICOLON,
    }
)


def _describe(exc: Exception) -> str:
    errors = getattr(exc, "errors", None)
    if errors and errors[0].get("description"):
        return str(errors[0]["description"])
    text = str(exc)
    return text.splitlines()[0] if text else type(exc).__name__


def _unwrap(node: exp.Expression) -> exp.Expression:
    # "(SELECT ...)" at statement level is still the inner query.
    while isinstance(node, (exp.Subquery, exp.Paren)) and isinstance(node.this, exp.Expression):
        node = node.this
    return node


def _kind(node: exp.Expression) -> str:
    if isinstance(node, _READ_ROOTS):
        return "SELECT"
    if isinstance(node, exp.Command):
        return str(node.this).upper()
    return node.key.upper()


class SqlglotParser:
    """Validating parser backed by sqlglot's dialect grammars."""

    def parse(self, sql: str, dialect: str) -> list[ParsedStatement]:
        grammar = Dialect.get_or_raise(dialect)
        try:
            tokens = grammar.tokenize(sql)
            self._check_operands(tokens)
            expressions = sqlglot.parse(sql, read=dialect)
        except (ParseError, TokenError) as exc:
            raise SqlParseError(_describe(exc)) from exc

        parsed: list[ParsedStatement] = []
        for expression in expressions:
            if expression is None:
                # Empty fragment produced by a trailing separator or a lone comment.
                continue
            parsed.append(self._inspect(_unwrap(expression), dialect))
        return parsed

    def _check_operands(self, tokens: list) -> None:
        for index, token in enumerate(tokens):
            if token.token_type not in _NEEDS_OPERAND:
                continue
            following = tokens[index + 1] if index + 1 < len(tokens) else None
            if following is None or following.token_type in _CLAUSE_TOKENS:
                got = following.text if following is not None else "end of input"
                raise SqlParseError(f"expected an expression after {token.text.upper()} but got {got}")

    def _inspect(self, node: exp.Expression, dialect: str) -> ParsedStatement:
        kind = _kind(node)
        write_keywords: set[str] = set()
        if kind == "SELECT":
            for nested in node.find_all(*_WRITE_NODES):
                write_keywords.add(_kind(nested))
            for select in node.find_all(exp.Select):
                if not select.expressions:
                    raise SqlParseError("SELECT without a column list")
        return ParsedStatement(
            kind=kind,
            write_keywords=frozenset(write_keywords),
            has_into=node.find(exp.Into) is not None,
            text=node.sql(dialect=dialect),
        )
