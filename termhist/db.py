# termhist/db.py
import datetime
from typing import Optional
from urllib.parse import quote

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()

# Turso/libsql endpoints go through the sqlite+libsql dialect (sqlalchemy-libsql)
_LIBSQL_SCHEMES = ("libsql://", "https://", "wss://")


def utcnow() -> datetime.datetime:
    """Naive UTC now; SQLite DateTime columns drop tzinfo anyway."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_iso(ts) -> Optional[str]:
    if ts is None:
        return None
    return ts.isoformat() if hasattr(ts, "isoformat") else str(ts)


def parse_ts(ts_raw) -> Optional[datetime.datetime]:
    """Accept a datetime, an ISO string (optional trailing 'Z') or None."""
    if ts_raw is None:
        return None
    if isinstance(ts_raw, datetime.datetime):
        return ts_raw
    if isinstance(ts_raw, (int, float)):
        return datetime.datetime.fromtimestamp(ts_raw, datetime.timezone.utc).replace(tzinfo=None)
    if isinstance(ts_raw, str):
        try:
            return datetime.datetime.fromisoformat(ts_raw.rstrip("Z"))
        except ValueError:
            return None
    return None


def sqlalchemy_url(url: str, token: Optional[str] = None) -> str:
    """Map a configured endpoint to a SQLAlchemy URL."""
    if url.startswith(_LIBSQL_SCHEMES):
        host = url.split("://", 1)[1].rstrip("/")
        qs = "secure=true"
        if token:
            qs += "&authToken=" + quote(token, safe="")
        return f"sqlite+libsql://{host}/?{qs}"
    return url


def make_engine(url: str, token: Optional[str] = None) -> Engine:
    url = sqlalchemy_url(url, token)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_db(engine: Engine):
    """Create tables if they don't exist."""
    # import models lazily so Base metadata has them
    import termhist.models as models  # noqa: F401
    Base.metadata.create_all(bind=engine)
