import os
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)


def _ensure_dir_for_sqlite(url: str) -> None:
    if not url.startswith("sqlite:///"):
        return
    path = url.replace("sqlite:///", "", 1)
    if path == ":memory:":
        return
    d = os.path.dirname(path)
    if d:
        os.makedirs(d, exist_ok=True)


def build_engine(url: str, echo: bool | None = None) -> Engine:
    """Create the Identity Store engine. The caller owns its lifecycle."""
    if echo is None:
        echo = os.getenv("DB_ECHO") == "1"
    if url.startswith("sqlite:"):
        _ensure_dir_for_sqlite(url)
        eng = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

        @event.listens_for(eng, "connect")
        def _sqlite_pragmas(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL")
                cur.execute("PRAGMA synchronous=NORMAL")
                cur.execute("PRAGMA busy_timeout=5000")
            finally:
                cur.close()

    else:
        # Postgres / others
        eng = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE_S", "300")),
            echo=echo,
        )
    log.info("DB engine ready dialect=%s", eng.dialect.name)
    return eng


def is_sqlite(engine: Engine) -> bool:
    return engine.dialect.name == "sqlite"


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"
