"""
Optimistic Concurrency Guard

Version tokens are the row's ``updated_at`` timestamp. Callers that want lost
update protection echo back the token they read; the guarded update only
touches the row when the stored token still matches, so a second writer holding
a stale token gets a conflict result instead of silently overwriting.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from .models import ErrorKind, error_result, success_result

logger = logging.getLogger(__name__)

# Fixed-width UTC format: lexical order of stored strings equals time order
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Tables whose rows carry an updated_at version token
GUARDED_TABLES = {"stories": "Story", "planning_docs": "Planning document", "epics": "Epic"}


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Format a moment (default: now) as a UTC ISO timestamp string."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def next_token(current: Optional[str] = None) -> str:
    """
    Produce a fresh version token strictly greater than ``current``.

    Two writes inside the same clock tick would otherwise share a token and
    the second writer's stale precondition would still match.
    """
    now = datetime.now(timezone.utc)
    if current:
        try:
            previous = parse_timestamp(current)
        except ValueError:
            previous = None
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
    return utc_timestamp(now)


def current_token(cursor: sqlite3.Cursor, table: str, row_id: str) -> Optional[str]:
    """Return the stored token for a row, or None if the row does not exist."""
    if table not in GUARDED_TABLES:
        raise ValueError(f"Table '{table}' does not carry a version token")
    cursor.execute(f"SELECT updated_at FROM {table} WHERE id = ?", (row_id,))
    row = cursor.fetchone()
    return row[0] if row else None


def guarded_update(
    cursor: sqlite3.Cursor,
    table: str,
    row_id: str,
    fields: Dict[str, Any],
    expected_token: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Single-row compare-and-swap update.

    Must be called inside an open write transaction. When ``expected_token`` is
    None the update is unconditional (last writer wins); otherwise the row is
    only updated while its token still equals ``expected_token``.

    Returns:
        success result with the new ``updated_at`` token, a ``conflict`` result
        carrying ``current_updated_at``, or ``not_found``.
    """
    stored = current_token(cursor, table, row_id)
    if stored is None:
        return error_result(ErrorKind.NOT_FOUND, f"{GUARDED_TABLES[table]} {row_id} not found")

    if expected_token is not None and expected_token != stored:
        logger.warning(f"Stale version token for {table} {row_id}: expected {expected_token}, current {stored}")
        return error_result(
            ErrorKind.CONFLICT,
            f"{row_id} was modified since it was read",
            conflict=True,
            current_updated_at=stored,
        )

    new_token = next_token(stored)
    assignments = [f"{column} = ?" for column in fields]
    params = list(fields.values())
    assignments.append("updated_at = ?")
    params.append(new_token)

    sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?"
    params.append(row_id)
    if expected_token is not None:
        sql += " AND updated_at = ?"
        params.append(expected_token)
    cursor.execute(sql, params)

    if cursor.rowcount == 0:
        # Only reachable if another connection slipped a write in; report it as a conflict
        return error_result(
            ErrorKind.CONFLICT,
            f"{row_id} was modified since it was read",
            conflict=True,
            current_updated_at=current_token(cursor, table, row_id),
        )

    return success_result(updated_at=new_token, previous_updated_at=stored)
