import functools
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import Conflict, StoreUnavailable

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _create_engine(database_url: str, timeout_secs: float) -> Engine:
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_secs
    else:
        engine_kwargs["pool_timeout"] = timeout_secs
        engine_kwargs["pool_pre_ping"] = True
    eng = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


@contextmanager
def store_errors(session: Session) -> Iterator[None]:
    """Translate store failures raised anywhere in the block into ledger errors.

    SQLite takes its write lock at the first INSERT or UPDATE, so a lock
    timeout can surface from a flush or execute long before the commit.
    The session is rolled back before the error propagates so no partial
    write of the unit of work stays visible.
    """
    try:
        yield
    except IntegrityError as exc:
        session.rollback()
        raise Conflict("A conflicting record already exists") from exc
    except (OperationalError, TimeoutError) as exc:
        session.rollback()
        raise StoreUnavailable("Store temporarily unavailable") from exc


def unit_of_work(method: Callable[..., T]) -> Callable[..., T]:
    """Run a service method under ``store_errors`` on its ``self.session``.

    Any exception rolls the session back, so a method that fails halfway
    leaves nothing staged for the next commit.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            with store_errors(self.session):
                return method(self, *args, **kwargs)
        except Exception:
            self.session.rollback()
            raise

    return wrapper


def commit_or_raise(session: Session) -> None:
    with store_errors(session):
        session.commit()


class Store:
    """Owns the engine and connection pool for one process.

    Created once at startup and disposed at shutdown; everything that talks
    to the database gets its sessions from here.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        timeout_secs: Optional[float] = None,
        engine: Optional[Engine] = None,
    ) -> None:
        if engine is None:
            settings = get_settings()
            engine = _create_engine(
                database_url or settings.database_url,
                settings.store_timeout_secs if timeout_secs is None else timeout_secs,
            )
        self.engine = engine
        self.session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session: Session = self.session_factory()
        try:
            with store_errors(session):
                yield session
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
