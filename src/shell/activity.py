"""Activity Log: unified lab timeline for audit and observability.

Central writer for every disposition decision, promotion, failure detection
and feedback-loop transition. Writes to SQLite and emits structlog entries.
Each row carries the trace id of the cycle or scan that produced it.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from src.shell.database import Database

log = structlog.get_logger()

CATEGORIES = ("CANDIDATE", "PROMOTION", "FAILURE", "FEEDBACK", "CYCLE", "SYSTEM")
SEVERITIES = ("info", "warning", "error")

# query filter -> SQL predicate
_FILTERS = (
    ("since", "timestamp >= ?"),
    ("until", "timestamp <= ?"),
    ("category", "category = ?"),
    ("severity", "severity = ?"),
    ("trace_id", "trace_id = ?"),
)


def _encode_detail(detail: dict | str | None) -> str | None:
    if detail is None or isinstance(detail, str):
        return detail
    try:
        return json.dumps(detail, default=str)
    except (TypeError, ValueError):
        return repr(detail)


class ActivityLogger:
    """Writes activity entries to DB and emits structlog."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def log(
        self,
        category: str,
        summary: str,
        severity: str = "info",
        detail: dict | str | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Write an activity entry to DB and emit structlog."""
        if category not in CATEGORIES:
            raise ValueError(f"Unknown activity category: {category}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown activity severity: {severity}")
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        await self._db.execute(
            "INSERT INTO activity_log (timestamp, category, severity, summary, detail, trace_id) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (ts, category, severity, summary, _encode_detail(detail), trace_id),
        )
        await self._db.commit()

        log.info("activity", category=category, severity=severity, summary=summary, trace_id=trace_id)

    # --- Convenience methods ---

    async def candidate(self, summary: str, severity: str = "info", detail: dict | None = None,
                        trace_id: str | None = None) -> None:
        await self.log("CANDIDATE", summary, severity, detail, trace_id)

    async def promotion(self, summary: str, severity: str = "info", detail: dict | None = None,
                        trace_id: str | None = None) -> None:
        await self.log("PROMOTION", summary, severity, detail, trace_id)

    async def failure(self, summary: str, severity: str = "info", detail: dict | None = None,
                      trace_id: str | None = None) -> None:
        await self.log("FAILURE", summary, severity, detail, trace_id)

    async def feedback(self, summary: str, severity: str = "info", detail: dict | None = None,
                       trace_id: str | None = None) -> None:
        await self.log("FEEDBACK", summary, severity, detail, trace_id)

    async def cycle(self, summary: str, severity: str = "info", detail: dict | None = None,
                    trace_id: str | None = None) -> None:
        await self.log("CYCLE", summary, severity, detail, trace_id)

    async def system(self, summary: str, severity: str = "info", detail: dict | None = None,
                     trace_id: str | None = None) -> None:
        await self.log("SYSTEM", summary, severity, detail, trace_id)

    # --- Query methods ---

    async def recent(self, limit: int = 30) -> list[dict]:
        """Return last N entries in chronological order (oldest first)."""
        rows = await self._db.fetchall(
            "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return list(reversed(rows))

    async def query(
        self,
        limit: int = 50,
        since: str | None = None,
        until: str | None = None,
        category: str | None = None,
        severity: str | None = None,
        trace_id: str | None = None,
    ) -> list[dict]:
        """Filtered query for REST endpoint. Returns newest-first."""
        values = {"since": since, "until": until, "category": category,
                  "severity": severity, "trace_id": trace_id}
        active = [(pred, values[name]) for name, pred in _FILTERS if values[name]]
        where = " WHERE " + " AND ".join(pred for pred, _ in active) if active else ""
        return await self._db.fetchall(
            f"SELECT * FROM activity_log{where} ORDER BY id DESC LIMIT ?",
            (*(v for _, v in active), limit),
        )
