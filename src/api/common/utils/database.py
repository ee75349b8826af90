import os
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlmodel import Session

load_dotenv()


def _get_database_url_from_env_vars():
    DB_SCHEME = os.getenv("DB_SCHEME", "postgresql")
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "postgres")
    DB_HOST = os.getenv("DB_HOST", "db")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "invoices")
    return f"{DB_SCHEME}://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"


def get_database_url():
    return os.getenv("DATABASE_URL", _get_database_url_from_env_vars())


def get_db_timeout_seconds() -> float:
    return float(os.getenv("DB_TIMEOUT_SECONDS", "10"))


def get_connect_args(url: str, timeout_seconds: float) -> dict:
    """
    Driver arguments that bound how long a single statement may wait.

    SQLite waits on its busy handler, PostgreSQL aborts statements that run
    longer than ``statement_timeout``.
    """
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if url.startswith("postgresql"):
        return {
            "connect_timeout": int(timeout_seconds),
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        }
    return {}


def build_engine(url: str, timeout_seconds: float = None, echo: bool = False):
    timeout_seconds = timeout_seconds or get_db_timeout_seconds()
    kwargs = {"echo": echo, "connect_args": get_connect_args(url, timeout_seconds)}
    if not url.startswith("sqlite"):
        kwargs["pool_timeout"] = timeout_seconds
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


DATABASE_URL = get_database_url()

engine = build_engine(
    DATABASE_URL,
    echo=os.getenv("ENV") not in ("production", "test"),
)


def get_db():
    with Session(engine) as session:
        yield session
