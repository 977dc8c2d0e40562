import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterator, Optional
from urllib.parse import urlparse

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

# server 폴더 기준 경로
SERVER_ROOT = Path(__file__).resolve().parent.parent


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or url.endswith(":memory:")


def _prepare_sqlite_url(url: str) -> str:
    """Ensure the sqlite file path exists and is absolute (relative paths resolve under server/)."""
    if not url.startswith("sqlite") or _is_memory_sqlite(url):
        return url

    parsed = urlparse(url)
    path = parsed.path
    if path.startswith("//"):
        # sqlite:////abs/path.db
        file_path = Path(path[1:])
    elif path.startswith("/"):
        # sqlite:///./data/oprep.db -> ./data/oprep.db
        file_path = Path(path[1:])
    else:
        file_path = Path(path)

    if not file_path.is_absolute():
        if file_path.parts and file_path.parts[0] == ".":
            file_path = Path(*file_path.parts[1:])
        file_path = SERVER_ROOT / file_path

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
    except (PermissionError, OSError):
        fallback = SERVER_ROOT / "data" / file_path.name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        logger.warning(f"⚠️ DB directory not writable, falling back to {fallback}")
        file_path = fallback

    return f"sqlite:///{file_path}"


class Database:
    """
    Storage-client handle.

    Constructed explicitly and stored on ``app.state.db``; opened at startup,
    closed at shutdown. Connections are pre-pinged on checkout.
    """

    def __init__(self, url: str, *, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> "Database":
        if self._engine is not None:
            return self

        url = _prepare_sqlite_url(self.url)
        kwargs: dict = {"echo": self.echo, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_sqlite(url):
                # one shared connection, otherwise every checkout gets an empty database
                kwargs["poolclass"] = StaticPool
        self._engine = create_engine(url, **kwargs)
        self.create_tables()
        logger.info(f"[DB] ✅ opened {self._engine.url.render_as_string(hide_password=True)}")
        return self

    def create_tables(self) -> None:
        # model modules register their tables on SQLModel.metadata at import
        import core.models  # noqa: F401
        import core.exam_models  # noqa: F401
        import core.content_models  # noqa: F401

        SQLModel.metadata.create_all(self.engine)

    def health_check(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"[DB] ❌ health check failed: {e}", exc_info=True)
            return False

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("[DB] closed")

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_session(request: Request) -> Generator[Session, None, None]:
    with get_database(request).session() as session:
        yield session
