from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from gateway_webhooks.database import Database
from gateway_webhooks.states import NotificationKind, Priority


class NotificationService(Protocol):
    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        kind: NotificationKind,
        priority: Priority,
    ) -> None: ...


class AuditService(Protocol):
    async def log_action(self, category: str, action: str, subject_id: str | None, description: str) -> None: ...


@dataclass
class AuditEntry:
    id: int
    category: str
    action: str
    subject_id: str | None
    description: str
    created_at: str


@dataclass
class Notification:
    id: int
    user_id: str
    title: str
    message: str
    kind: str
    priority: str
    is_read: bool
    created_at: str


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SQLiteAuditService:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def log_action(self, category: str, action: str, subject_id: str | None, description: str) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO audit_log(category,action,subject_id,description,created_at) VALUES(?,?,?,?,?)",
                (category, action, subject_id, description, _now()),
            )

    async def entries(self, subject_id: str | None = None) -> list[AuditEntry]:
        query = "SELECT id,category,action,subject_id,description,created_at FROM audit_log"
        params: tuple = ()
        if subject_id is not None:
            query += " WHERE subject_id=?"
            params = (subject_id,)
        async with self._db.conn.execute(query + " ORDER BY id", params) as cursor:
            rows = await cursor.fetchall()
        return [AuditEntry(*row) for row in rows]


class SQLiteNotificationService:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        kind: NotificationKind,
        priority: Priority,
    ) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO notifications(user_id,title,message,kind,priority,is_read,created_at) "
                "VALUES(?,?,?,?,?,0,?)",
                (user_id, title, message, kind, priority, _now()),
            )

    async def for_user(self, user_id: str) -> list[Notification]:
        async with self._db.conn.execute(
            "SELECT id,user_id,title,message,kind,priority,is_read,created_at "
            "FROM notifications WHERE user_id=? ORDER BY id",
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [Notification(*row[:6], bool(row[6]), row[7]) for row in rows]
