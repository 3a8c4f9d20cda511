from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from unit_admin.core import config


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(config.DATABASE_URL, connect_args=_connect_args(config.DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_user_schema_checked = False

EXCLUSIVE_UNIT_INDEX = 'uq_users_exclusive_unit_id'

# Live holders of DO units get exclusive_unit_id = unit_id; everybody else NULL.
BACKFILL_EXCLUSIVE_UNIT_SQL = """
UPDATE users SET exclusive_unit_id = CASE
    WHEN role <> 'pending'
     AND unit_id IN (SELECT id FROM units WHERE UPPER(TRIM(full_name)) LIKE '%/DO')
    THEN unit_id
    ELSE NULL
END
"""


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def ensure_user_schema() -> None:
    global _user_schema_checked

    if _user_schema_checked:
        return

    with _schema_lock:
        if _user_schema_checked:
            return

        inspector = inspect(engine)

        if 'users' not in inspector.get_table_names():
            _user_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('users')}
        if 'exclusive_unit_id' in existing_columns:
            _user_schema_checked = True
            return

        with engine.begin() as connection:
            connection.execute(text('ALTER TABLE users ADD COLUMN exclusive_unit_id INTEGER REFERENCES units(id)'))
            connection.execute(text(BACKFILL_EXCLUSIVE_UNIT_SQL))
            connection.execute(
                text(f'CREATE UNIQUE INDEX IF NOT EXISTS {EXCLUSIVE_UNIT_INDEX} ON users(exclusive_unit_id)')
            )

        _user_schema_checked = True
