import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import Settings

logger = logging.getLogger(__name__)

# Driver-level failures that may mean the database cannot be reached.
STORAGE_ERRORS = (OperationalError, InterfaceError)

# Driver messages for a statement that ran out of time on a live server.
_TIMEOUT_MARKERS = (
    "database is locked",
    "statement timeout",
    "timed out",
    "lost connection to mysql server during query",
)


class StorageUnavailable(RuntimeError):
    pass


class Base(DeclarativeBase):
    pass


def storage_connect_args(url: str, timeout: float) -> dict[str, object]:
    """DBAPI arguments bounding connection setup and statement execution.

    PostgreSQL gets a server-side ``statement_timeout``; MySQL gets socket
    read/write timeouts; SQLite gets its busy-handler timeout, which bounds
    waits on a locked database file.
    """
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        return {"check_same_thread": False, "timeout": timeout}
    seconds = max(1, int(timeout))
    if backend == "postgresql":
        return {
            "connect_timeout": seconds,
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    if backend in ("mysql", "mariadb"):
        return {
            "connect_timeout": seconds,
            "read_timeout": seconds,
            "write_timeout": seconds,
        }
    return {"connect_timeout": seconds}


def create_storage_engine(settings: Settings) -> Engine:
    timeout = settings.storage_timeout_secs
    connect_args = storage_connect_args(settings.database_url, timeout)
    engine_args: dict[str, object] = {"pool_pre_ping": True}
    is_sqlite = make_url(settings.database_url).get_backend_name() == "sqlite"
    if not is_sqlite:
        engine_args["pool_timeout"] = timeout

    eng = create_engine(settings.database_url, connect_args=connect_args, **engine_args)
    if is_sqlite:
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _is_timeout(exc: DBAPIError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.close()


class Storage:
    """Handle to the transaction database.

    Connectivity is tracked explicitly: the handle starts disconnected, becomes
    connected after a successful :meth:`ping`, and drops back to disconnected
    when a ping fails, including the one issued after a driver error inside a
    session. Errors from a reachable server (a lock or statement timeout, a
    dropped connection that reconnects) surface as :class:`StorageUnavailable`
    without touching the state; anything else propagates unchanged. Sessions
    are refused while disconnected so requests fail fast.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessionmaker = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )
        self._connected = False
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def status(self) -> str:
        return "connected" if self._connected else "disconnected"

    def redacted_url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    def _set_connected(self, connected: bool) -> None:
        with self._lock:
            changed = connected != self._connected
            self._connected = connected
        if changed:
            logger.info(f"storage_status: status={self.status()}")

    def mark_disconnected(self) -> None:
        self._set_connected(False)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except PoolTimeoutError:
            # Every pooled connection is checked out; the server itself may be fine.
            logger.warning("storage_ping: ok=busy error=TimeoutError")
            return self._connected
        except STORAGE_ERRORS as exc:
            logger.warning(f"storage_ping: ok=False error={exc.__class__.__name__}")
            self._set_connected(False)
            return False
        self._set_connected(True)
        return True

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        if not self._connected:
            raise StorageUnavailable("Database connection not available")
        session: Session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except PoolTimeoutError as exc:
            session.rollback()
            raise StorageUnavailable("Database busy") from exc
        except STORAGE_ERRORS as exc:
            session.rollback()
            if not self.ping():
                raise StorageUnavailable("Database connection lost") from exc
            if exc.connection_invalidated or _is_timeout(exc):
                logger.warning(
                    f"storage_error: error={exc.__class__.__name__} "
                    f"invalidated={exc.connection_invalidated}"
                )
                raise StorageUnavailable("Database busy") from exc
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
        self._set_connected(False)
