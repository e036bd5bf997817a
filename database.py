import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import ConflictError, InternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_store_engine(database_url: Optional[str] = None) -> Engine:
    url = database_url or get_settings().database_url
    connect_args: dict[str, object] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    eng = create_engine(url, connect_args=connect_args)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    session: Session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_in_transaction(
    session_factory: sessionmaker,
    fn: Callable[[Session], T],
    *,
    max_attempts: int,
    label: str = "transaction",
) -> T:
    """Run ``fn`` in a fresh session and commit it atomically.

    Rows mapped with a ``version_id_col`` are checked on flush; if another
    writer committed first the whole attempt is rolled back and ``fn`` runs
    again from its first read. Exhausting ``max_attempts`` raises
    ``ConflictError``. Any other exception rolls back and propagates.
    """
    attempt = 0
    while True:
        attempt += 1
        session: Session = session_factory()
        try:
            result = fn(session)
            session.commit()
            if attempt > 1:
                logger.info(f"{label}: committed after attempts={attempt}")
            return result
        except StaleDataError as exc:
            session.rollback()
            if attempt >= max_attempts:
                logger.warning(f"{label}: conflict retries exhausted attempts={attempt}")
                raise ConflictError(
                    f"Concurrent update detected; gave up after {attempt} attempts"
                ) from exc
            logger.warning(f"{label}: conflict detected, retrying attempt={attempt}")
        except OperationalError as exc:
            session.rollback()
            raise InternalError("Store unavailable") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
