# tasker_monitor/db/infra/sql_utils.py
"""
SQL identifier helpers: safe quoting and basic validation.

 - validate_identifier(name)          -> raises on suspicious/invalid names
 - quote_ident(name, dialect)         -> quoted, escaped identifier for the dialect
 - qualify(table, schema, dialect)    -> optionally schema-qualified table reference
 - squish(text)                       -> collapse runs of whitespace

PostgreSQL and SQLite use SQL-standard double quotes; MySQL uses backticks
unless ANSI_QUOTES is enabled, so backticks are emitted for it.
"""
from __future__ import annotations

import re
from typing import Optional

_WHITESPACE = re.compile(r"\s+")


def validate_identifier(name: str) -> None:
    """
    Must be a non-empty string without NUL/newline/carriage-return characters.
    Raises ValueError/TypeError on invalid input.
    """
    if not isinstance(name, str):
        raise TypeError("Identifier must be a string")
    if not name:
        raise ValueError("Identifier must not be empty")
    if "\x00" in name or "\n" in name or "\r" in name:
        raise ValueError("Identifier contains disallowed control characters")


def quote_ident(name: str, dialect: str = "postgresql") -> str:
    """
    Examples:
      quote_ident('tasks') -> '"tasks"'
      quote_ident('we"ir d') -> '"we""ir d"'
      quote_ident('tasks', 'mysql') -> '`tasks`'
    """
    validate_identifier(name)
    if dialect == "mysql":
        return "`" + name.replace("`", "``") + "`"
    return '"' + name.replace('"', '""') + '"'


def qualify(table: str, schema: Optional[str] = None, dialect: str = "postgresql") -> str:
    """Schema-qualify a table reference; the schema is only applied for PostgreSQL."""
    if schema and dialect == "postgresql":
        return f"{quote_ident(schema, dialect)}.{quote_ident(table, dialect)}"
    return quote_ident(table, dialect)


def squish(text: Optional[str]) -> str:
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip()
