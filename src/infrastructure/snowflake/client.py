"""
Snowflake connections: real, and an in-memory stand-in.

Repositories take whatever this module hands out and never care which
one it is. The mock understands exactly the SQL ChunkRepository and
SessionRepository issue, nothing more.
"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional

from .repositories.sessions import SnowflakeConfig, SnowflakeConnection

logger = logging.getLogger(__name__)


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


def _load_private_key(key_path: str) -> bytes:
    """Read a PEM private key and return the DER/PKCS8 bytes the connector wants."""
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization

    with open(key_path, 'rb') as key_file:
        private_key = serialization.load_pem_private_key(
            key_file.read(),
            password=None,
            backend=default_backend()
        )

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _connect_params(config: SnowflakeConfig) -> dict[str, Any]:
    """Connector kwargs; key-pair auth wins over a password when both are set."""
    params: dict[str, Any] = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
        'client_session_keep_alive': True,
    }
    if config.role:
        params['role'] = config.role

    if config.private_key_path:
        params['private_key'] = _load_private_key(config.private_key_path)
    elif config.password:
        params['password'] = config.password
    else:
        raise SnowflakeConnectionError(
            "Either password or private_key_path must be provided"
        )

    return params


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Open a Snowflake connection and close it on exit.

    Usage:
        with get_snowflake_connection(config) as conn:
            repo = ChunkRepository(conn)
    """
    import snowflake.connector

    params = _connect_params(config)

    try:
        conn = snowflake.connector.connect(**params)
    except snowflake.connector.errors.DatabaseError as e:
        logger.error(
            "Snowflake connection failed",
            extra={"account": config.account, "error": str(e)}
        )
        raise SnowflakeConnectionError(f"Database connection failed: {e}")

    logger.debug(
        "Snowflake connection open",
        extra={
            "account": config.account,
            "database": config.database,
            "auth": "key-pair" if 'private_key' in params else "password",
        }
    )

    try:
        yield conn
    finally:
        try:
            conn.close()
        except Exception as e:
            logger.warning("Error closing Snowflake connection", extra={"error": str(e)})


# ---------------------------------------------------------------------------
# In-memory stand-in
# ---------------------------------------------------------------------------

class _InMemoryTables:
    """Row tuples for the two tables the repositories touch."""

    def __init__(self) -> None:
        self.sessions: dict[int, tuple] = {}
        self.audio_chunks: dict[tuple[int, int], tuple] = {}

    def chunks_for(self, session_id: int) -> list[tuple]:
        rows = [row for (sid, _), row in self.audio_chunks.items() if sid == session_id]
        return sorted(rows, key=lambda row: row[1])


class MockSnowflakeCursor:
    """
    Cursor that answers the repositories' SQL from _InMemoryTables.

    Statements are recognised by a few keywords in the normalised query
    text; anything unrecognised is accepted and returns no rows.
    """

    def __init__(self, tables: _InMemoryTables) -> None:
        self._tables = tables
        self._rows: list = []
        self.rowcount = 0

    def execute(self, query: str, params: Optional[tuple] = None) -> "MockSnowflakeCursor":
        sql = " ".join(query.upper().split())
        logger.debug("Mock SQL", extra={"sql": sql[:100], "params": params})

        self._rows = []
        self.rowcount = 0
        if not params:
            return self

        handlers = (
            ("MERGE INTO AUDIO_CHUNKS", self._upsert_chunk),
            ("MERGE INTO SESSIONS", self._upsert_session),
            ("DELETE FROM AUDIO_CHUNKS", self._delete_chunk),
            ("FROM AUDIO_CHUNKS", self._select_chunks),
            ("FROM SESSIONS", self._select_session),
        )
        for marker, handler in handlers:
            if marker in sql:
                handler(sql, params)
                break

        return self

    def _upsert_chunk(self, sql: str, params: tuple) -> None:
        self._tables.audio_chunks[(int(params[0]), int(params[1]))] = tuple(params)
        self.rowcount = 1

    def _upsert_session(self, sql: str, params: tuple) -> None:
        session_id = int(params[0])
        row = tuple(params)
        previous = self._tables.sessions.get(session_id)
        if previous is not None:
            # the UPDATE branch leaves created_at alone
            row = row[:5] + previous[5:]
        self._tables.sessions[session_id] = row
        self.rowcount = 1

    def _delete_chunk(self, sql: str, params: tuple) -> None:
        removed = self._tables.audio_chunks.pop((int(params[0]), int(params[1])), None)
        self.rowcount = 0 if removed is None else 1

    def _select_chunks(self, sql: str, params: tuple) -> None:
        rows = self._tables.chunks_for(int(params[0]))
        if "CHUNK_INDEX >= 0" in sql:
            rows = [row for row in rows if row[1] >= 0]
        elif "CHUNK_INDEX = %S" in sql:
            rows = [row for row in rows if row[1] == int(params[1])]
        self._rows = rows

    def _select_session(self, sql: str, params: tuple) -> None:
        row = self._tables.sessions.get(int(params[0]))
        self._rows = [] if row is None else [row]

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self) -> list:
        return list(self._rows)

    def close(self) -> None:
        pass


class MockSnowflakeConnection:
    """
    Connection whose tables live in a dict for the life of the object.

    SNOWFLAKE_MOCK_MODE shares one instance across requests so uploads and
    reconciliation see the same rows. Commits and rollbacks do nothing.
    """

    def __init__(self) -> None:
        self._tables = _InMemoryTables()
        logger.info("Using in-memory Snowflake tables")

    def cursor(self) -> MockSnowflakeCursor:
        return MockSnowflakeCursor(self._tables)

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    def close(self) -> None:
        pass

    # Test helpers

    def _add_session(self, session_id: int, patient_name: str = "Test Patient") -> None:
        self._tables.sessions[session_id] = (
            session_id, patient_name, "scheduled", None, None, None,
        )

    def _chunk_rows(self, session_id: int) -> list[tuple]:
        """Every chunk row for the session, merged sentinel included."""
        return self._tables.chunks_for(session_id)

    def _clear(self) -> None:
        self._tables = _InMemoryTables()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

@contextmanager
def create_snowflake_connection(
    config: Optional[SnowflakeConfig] = None,
    mock_mode: bool = False,
) -> Generator[SnowflakeConnection, None, None]:
    """
    Open a real connection from config, or a throwaway in-memory one when
    mock_mode is set. A real connection needs config.
    """
    if mock_mode:
        yield MockSnowflakeConnection()
        return

    if config is None:
        raise ValueError("config is required when not in mock mode")

    with get_snowflake_connection(config) as conn:
        yield conn
