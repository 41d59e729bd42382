from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy import create_engine, event
import os


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Configure SQLite so the sync thread and request handlers can share the file."""
    cursor = dbapi_connection.cursor()
    try:
        # Wait for locks instead of failing immediately.
        cursor.execute("PRAGMA busy_timeout=5000")
        # Readers are not blocked by the sync writer.
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _default_db_path() -> str:
    env_path = (os.getenv("DATABASE_PATH") or "").strip()
    if env_path:
        return os.path.abspath(env_path)
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "crimson.db")


DB_PATH = _default_db_path()
os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
SQLALCHEMY_DATABASE_URL = f"sqlite:///{DB_PATH}"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
    pool_pre_ping=True,
)
event.listen(engine, "connect", _set_sqlite_pragmas)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
