from dataclasses import dataclass
from datetime import UTC, datetime

import aiosqlite

from gateway_webhooks.database import Database
from gateway_webhooks.models import ProcessingRecord, WebhookEvent
from gateway_webhooks.states import ProcessingStatus

_COLUMNS = "event_id,event_type,status,attempts,last_error,created_at,updated_at,processed_at"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _row_to_record(row: aiosqlite.Row) -> ProcessingRecord:
    record = ProcessingRecord(*row)
    record.status = ProcessingStatus(record.status)
    return record


@dataclass(frozen=True)
class ProceedToken:
    """Proof that the holder won the right to process ``event_id``."""

    event_id: str
    attempt: int


class SQLiteIdempotencyStore:
    """Durable log of gateway event ids, the single synchronization point.

    ``begin`` relies on the primary key of ``processed_events``: of several
    concurrent callers for the same id exactly one INSERT succeeds. A record
    left ``failed`` by an earlier delivery can be reclaimed by a later one,
    again by exactly one caller, through a conditional UPDATE.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def begin(self, event: WebhookEvent) -> ProceedToken | None:
        now = _now()
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    f"INSERT INTO processed_events({_COLUMNS}) VALUES(?,?,?,1,NULL,?,?,NULL)",
                    (event.id, event.type, ProcessingStatus.PROCESSING, now, now),
                )
            return ProceedToken(event.id, 1)
        except aiosqlite.IntegrityError:
            pass

        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE processed_events SET status=?, attempts=attempts+1, updated_at=? WHERE event_id=? AND status=?",
                (ProcessingStatus.PROCESSING, now, event.id, ProcessingStatus.FAILED),
            )
        if cursor.rowcount != 1:
            return None
        record = await self.get(event.id)
        return ProceedToken(event.id, record.attempts)

    async def complete(
        self,
        token: ProceedToken,
        outcome: ProcessingStatus,
        error: str | None = None,
    ) -> None:
        if outcome is ProcessingStatus.PROCESSING:
            raise ValueError("outcome must be processed or failed")
        now = _now()
        processed_at = now if outcome is ProcessingStatus.PROCESSED else None
        async with self._db.transaction() as conn:
            await conn.execute(
                "UPDATE processed_events SET status=?, last_error=?, updated_at=?, processed_at=? "
                "WHERE event_id=? AND status=?",
                (outcome, error, now, processed_at, token.event_id, ProcessingStatus.PROCESSING),
            )

    async def get(self, event_id: str) -> ProcessingRecord | None:
        async with self._db.conn.execute(
            f"SELECT {_COLUMNS} FROM processed_events WHERE event_id=?", (event_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def get_stuck(self, before: str) -> list[str]:
        async with self._db.conn.execute(
            "SELECT event_id FROM processed_events WHERE status=? AND updated_at < ? ORDER BY updated_at",
            (ProcessingStatus.PROCESSING, before),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def delete_expired(self, before: str) -> int:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM processed_events WHERE status IN (?,?) AND created_at < ?",
                (ProcessingStatus.PROCESSED, ProcessingStatus.FAILED, before),
            )
        return cursor.rowcount
