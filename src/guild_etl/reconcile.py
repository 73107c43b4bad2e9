"""guild_etl.reconcile

Membership reconciliation: after an ingestion run, any active character whose
name was not touched by the run has left the eligible roster and is
soft-deleted.  Members skipped for item level count as touched.

Matching is by name only; the roster is single-realm in practice.  Running
twice with the same touched set is a no-op the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

import psycopg

from guild_etl.store import mark_inactive_except

log = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    deactivated_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"deactivated_count": self.deactivated_count}


def reconcile(conn: psycopg.Connection, names_touched: Iterable[str]) -> ReconcileResult:
    names = sorted({n for n in names_touched if n})
    deactivated = mark_inactive_except(conn, names)
    if deactivated:
        log.info("reconcile: %d member(s) marked inactive", deactivated)
    return ReconcileResult(deactivated_count=deactivated)
