"""
Snowflake repository for recording sessions.

Session management proper lives elsewhere. The audio pipeline only
needs to answer "does this session exist?", and the API needs a way to
register a session so chunks can be attached to it. That's all this
repository does.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from src.core.audio.models import Session, SessionStatus


logger = logging.getLogger(__name__)


class SnowflakeConnection(Protocol):
    """What the repositories need from a connection: cursors and commit."""

    def cursor(self): ...
    def commit(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Connection parameters; set either password or private_key_path."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    database: str = "SESSION_AUDIO"
    schema: str = "PUBLIC"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


class SessionRepository:
    """Looks up and registers sessions by integer id."""

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def find_session_by_id(self, session_id: int) -> Optional[Session]:
        """Return the session, or None if it doesn't exist."""
        cursor = self._conn.cursor()

        try:
            cursor.execute("""
                SELECT session_id, patient_name, status, scheduled_at, notes, created_at
                FROM sessions
                WHERE session_id = %s
            """, (session_id,))

            row = cursor.fetchone()
            if not row:
                return None

            return self._build_session(row)

        finally:
            cursor.close()

    def save_session(self, session: Session) -> None:
        """
        Insert or update a session.

        Idempotent: saving the same session twice updates in place.
        """
        cursor = self._conn.cursor()

        try:
            cursor.execute("""
                MERGE INTO sessions AS target
                USING (
                    SELECT %s AS session_id, %s AS patient_name, %s AS status,
                           %s AS scheduled_at, %s AS notes, %s AS created_at
                ) AS source
                ON target.session_id = source.session_id
                WHEN MATCHED THEN UPDATE SET
                    patient_name = source.patient_name,
                    status = source.status,
                    scheduled_at = source.scheduled_at,
                    notes = source.notes
                WHEN NOT MATCHED THEN INSERT (
                    session_id, patient_name, status, scheduled_at, notes, created_at
                ) VALUES (
                    source.session_id, source.patient_name, source.status,
                    source.scheduled_at, source.notes, source.created_at
                )
            """, (
                session.id,
                session.patient_name,
                session.status.value,
                session.scheduled_at,
                session.notes,
                session.created_at,
            ))

            self._conn.commit()

            logger.info("Saved session", extra={"session_id": session.id})

        except Exception as e:
            logger.error(
                "Failed to save session",
                extra={"session_id": session.id, "error": str(e)}
            )
            raise
        finally:
            cursor.close()

    def _build_session(self, row) -> Session:
        return Session(
            id=int(row[0]),
            patient_name=row[1] or "",
            status=SessionStatus(row[2]) if row[2] else SessionStatus.SCHEDULED,
            scheduled_at=row[3],
            notes=row[4],
            created_at=row[5],
        )
