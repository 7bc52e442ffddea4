"""
SQLite-backed document store.

Check-ins go through `CheckinStore.transaction()`, which takes the database
write lock up front (BEGIN IMMEDIATE) so that the read of the latest check-in
and the writes that depend on it happen under the same lock. Everything else
is a plain read or a single-purpose write.
"""
import logging
import sqlite3
import time
import uuid
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .errors import StoreConflictError
from .models import CheckIn, Circle, DeviceEndpoint, DistressAlert, EmergencyContact, User

logger = logging.getLogger(__name__)

_USER_COLUMNS = (
    "id, display_name, cadence, custom_hours, streak, notify_circle_on_checkin, "
    "emergency_alert_enabled, emergency_contact"
)
_UPDATABLE_USER_FIELDS = {
    "display_name", "cadence", "custom_hours", "streak", "notify_circle_on_checkin",
    "emergency_alert_enabled", "emergency_contact",
}


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _is_contention(err: sqlite3.OperationalError) -> bool:
    text = str(err).lower()
    return "locked" in text or "busy" in text


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


def _user_from_row(row) -> User:
    (user_id, display_name, cadence, custom_hours, streak, notify_circle,
     emergency_enabled, contact_json) = row
    return User(
        id=user_id,
        display_name=display_name or "",
        cadence=cadence,
        custom_hours=custom_hours,
        streak=streak or 0,
        notify_circle_on_checkin=bool(notify_circle),
        emergency_alert_enabled=bool(emergency_enabled),
        emergency_contact=EmergencyContact.model_validate_json(contact_json) if contact_json else None,
    )


def _column_value(field: str, value):
    if field == "emergency_contact":
        return value.model_dump_json() if value is not None else None
    if field == "cadence":
        return getattr(value, "value", value)
    if isinstance(value, bool):
        return int(value)
    return value


class Transaction:
    """Handle passed to the body of `CheckinStore.transaction()`."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_user(self, user_id: str) -> Optional[User]:
        row = self.conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def latest_checkin(self, user_id: str) -> Optional[CheckIn]:
        row = self.conn.execute(
            "SELECT id, user_id, timestamp FROM checkins WHERE user_id = ? ORDER BY timestamp DESC LIMIT 1",
            (user_id,),
        ).fetchone()
        if not row:
            return None
        return CheckIn(id=row[0], user_id=row[1], timestamp=from_ms(row[2]))

    def insert_checkin(self, user_id: str, timestamp: datetime) -> CheckIn:
        checkin = CheckIn(id=new_id(), user_id=user_id, timestamp=timestamp)
        self.conn.execute(
            "INSERT INTO checkins (id, user_id, timestamp) VALUES (?, ?, ?)",
            (checkin.id, user_id, to_ms(timestamp)),
        )
        return checkin

    def update_user(self, user_id: str, **fields) -> None:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_column_value(name, value) for name, value in fields.items()]
        self.conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", (*values, user_id))


class CheckinStore:
    def __init__(self, db_path: str, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly
        return sqlite3.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None, check_same_thread=False
        )

    def init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                display_name TEXT DEFAULT '',
                cadence TEXT DEFAULT 'daily',
                custom_hours INTEGER DEFAULT NULL,
                streak INTEGER DEFAULT 0,
                notify_circle_on_checkin INTEGER DEFAULT 1,
                emergency_alert_enabled INTEGER DEFAULT 0,
                emergency_contact TEXT DEFAULT NULL
            );
            CREATE TABLE IF NOT EXISTS checkins (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                timestamp INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS checkins_user_time ON checkins (user_id, timestamp DESC);
            CREATE TABLE IF NOT EXISTS circles (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS circle_members (
                circle_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                PRIMARY KEY (circle_id, user_id)
            );
            CREATE INDEX IF NOT EXISTS circle_members_user ON circle_members (user_id);
            CREATE TABLE IF NOT EXISTS device_endpoints (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                channel TEXT NOT NULL DEFAULT 'web-push',
                created_at INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS device_endpoints_user ON device_endpoints (user_id);
            CREATE TABLE IF NOT EXISTS distress_alerts (
                id TEXT PRIMARY KEY,
                actor_id TEXT NOT NULL,
                actor_name TEXT NOT NULL,
                circle_id TEXT DEFAULT NULL,
                recipient_id TEXT DEFAULT NULL,
                message TEXT DEFAULT NULL,
                created_at INTEGER NOT NULL,
                resolved INTEGER DEFAULT 0
            );
            """)
        logger.info(f"Store ready at {self.db_path}")

    @contextmanager
    def transaction(self):
        """
        Run the body under the database write lock.

        Commits on clean exit, rolls back on any exception. Lock contention at
        begin, during the body or at commit surfaces as StoreConflictError.
        """
        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if _is_contention(e):
                    raise StoreConflictError("The store is busy, please try again.") from e
                raise
            try:
                yield Transaction(conn)
            except sqlite3.OperationalError as e:
                _rollback(conn)
                if _is_contention(e):
                    raise StoreConflictError("The store is busy, please try again.") from e
                raise
            except BaseException:
                _rollback(conn)
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.OperationalError as e:
                _rollback(conn)
                if _is_contention(e):
                    raise StoreConflictError("The store is busy, please try again.") from e
                raise

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        with closing(self._connect()) as conn:
            return Transaction(conn).get_user(user_id)

    def upsert_user(self, user: User) -> User:
        """Create a user or update their settings. An existing streak is never touched here."""
        contact = _column_value("emergency_contact", user.emergency_contact)
        with self.transaction() as tx:
            tx.conn.execute(f"""
            INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                display_name=excluded.display_name,
                cadence=excluded.cadence,
                custom_hours=excluded.custom_hours,
                notify_circle_on_checkin=excluded.notify_circle_on_checkin,
                emergency_alert_enabled=excluded.emergency_alert_enabled,
                emergency_contact=excluded.emergency_contact
            """, (user.id, user.display_name, user.cadence.value, user.custom_hours, user.streak,
                  int(user.notify_circle_on_checkin), int(user.emergency_alert_enabled), contact))
            return tx.get_user(user.id)

    def users_with_emergency_alerts(self) -> List[User]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE emergency_alert_enabled = 1 ORDER BY id"
            ).fetchall()
        return [_user_from_row(r) for r in rows]

    # Check-ins

    def latest_checkin(self, user_id: str) -> Optional[CheckIn]:
        with closing(self._connect()) as conn:
            return Transaction(conn).latest_checkin(user_id)

    def list_checkins(self, user_id: str) -> List[CheckIn]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT id, user_id, timestamp FROM checkins WHERE user_id = ? ORDER BY timestamp DESC",
                (user_id,),
            ).fetchall()
        return [CheckIn(id=r[0], user_id=r[1], timestamp=from_ms(r[2])) for r in rows]

    # Circles

    def create_circle(self, name: str, owner_id: str, member_ids: Iterable[str] = (),
                      circle_id: Optional[str] = None) -> Circle:
        circle_id = circle_id or new_id()
        with self.transaction() as tx:
            tx.conn.execute(
                "INSERT INTO circles (id, name, owner_id, created_at) VALUES (?, ?, ?, ?)",
                (circle_id, name, owner_id, int(time.time() * 1000)),
            )
            for member_id in [owner_id, *member_ids]:
                tx.conn.execute(
                    "INSERT OR IGNORE INTO circle_members (circle_id, user_id) VALUES (?, ?)",
                    (circle_id, member_id),
                )
        return self.get_circle(circle_id)

    def _load_circle(self, conn, row) -> Circle:
        circle_id, name, owner_id = row
        members = conn.execute(
            "SELECT user_id FROM circle_members WHERE circle_id = ? ORDER BY rowid", (circle_id,)
        ).fetchall()
        return Circle(id=circle_id, name=name, owner_id=owner_id, member_ids=[m[0] for m in members])

    def get_circle(self, circle_id: str) -> Optional[Circle]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT id, name, owner_id FROM circles WHERE id = ?", (circle_id,)).fetchone()
            return self._load_circle(conn, row) if row else None

    def list_circles(self) -> List[Circle]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT id, name, owner_id FROM circles ORDER BY created_at, id").fetchall()
            return [self._load_circle(conn, r) for r in rows]

    def circles_for_user(self, user_id: str) -> List[Circle]:
        with closing(self._connect()) as conn:
            rows = conn.execute("""
                SELECT c.id, c.name, c.owner_id FROM circles c
                JOIN circle_members m ON m.circle_id = c.id
                WHERE m.user_id = ?
                ORDER BY c.created_at, c.id
            """, (user_id,)).fetchall()
            return [self._load_circle(conn, r) for r in rows]

    def add_circle_member(self, circle_id: str, user_id: str) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO circle_members (circle_id, user_id) VALUES (?, ?)", (circle_id, user_id)
            )

    def remove_circle_member(self, circle_id: str, user_id: str) -> None:
        with closing(self._connect()) as conn:
            conn.execute("DELETE FROM circle_members WHERE circle_id = ? AND user_id = ?", (circle_id, user_id))

    # Device endpoints

    def register_endpoint(self, endpoint: DeviceEndpoint) -> DeviceEndpoint:
        with closing(self._connect()) as conn:
            conn.execute("""
                INSERT INTO device_endpoints (token, user_id, channel, created_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(token) DO UPDATE SET user_id=excluded.user_id, channel=excluded.channel
            """, (endpoint.token, endpoint.user_id, endpoint.channel.value, int(time.time() * 1000)))
        return endpoint

    def remove_endpoint(self, token: str) -> bool:
        with closing(self._connect()) as conn:
            cur = conn.execute("DELETE FROM device_endpoints WHERE token = ?", (token,))
            return cur.rowcount > 0

    def endpoints_for_user(self, user_id: str) -> List[DeviceEndpoint]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT token, user_id, channel FROM device_endpoints WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [DeviceEndpoint(token=r[0], user_id=r[1], channel=r[2]) for r in rows]

    # Distress alerts

    def insert_distress_alert(self, alert: DistressAlert) -> DistressAlert:
        with closing(self._connect()) as conn:
            conn.execute("""
                INSERT INTO distress_alerts
                    (id, actor_id, actor_name, circle_id, recipient_id, message, created_at, resolved)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (alert.id, alert.actor_id, alert.actor_name, alert.circle_id, alert.recipient_id,
                  alert.message, to_ms(alert.created_at), int(alert.resolved)))
        return alert

    def list_distress_alerts(self, actor_id: str) -> List[DistressAlert]:
        with closing(self._connect()) as conn:
            rows = conn.execute("""
                SELECT id, actor_id, actor_name, circle_id, recipient_id, message, created_at, resolved
                FROM distress_alerts WHERE actor_id = ? ORDER BY created_at DESC
            """, (actor_id,)).fetchall()
        return [
            DistressAlert(id=r[0], actor_id=r[1], actor_name=r[2], circle_id=r[3], recipient_id=r[4],
                          message=r[5], created_at=from_ms(r[6]), resolved=bool(r[7]))
            for r in rows
        ]
