import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError

from unit_admin import database
from unit_admin.database import transaction
from unit_admin.models.unit import Unit


@pytest.fixture
def legacy_engine(monkeypatch: pytest.MonkeyPatch):
    engine = create_engine('sqlite:///:memory:')
    with engine.begin() as connection:
        connection.execute(text(
            'CREATE TABLE units (id INTEGER PRIMARY KEY, name VARCHAR, code VARCHAR, '
            'full_name VARCHAR, description TEXT, is_active BOOLEAN, created_at DATETIME)'
        ))
        connection.execute(text(
            'CREATE TABLE users (id INTEGER PRIMARY KEY, name VARCHAR, username VARCHAR, email VARCHAR, '
            'hashed_password VARCHAR, role VARCHAR, unit_id INTEGER, created_at DATETIME)'
        ))
        connection.execute(text(
            "INSERT INTO units (id, name, code, full_name, is_active) VALUES "
            "(1, 'Dispatch', 'CPMSD-DO', ' cpmsd/do ', 1), (2, 'Admin', 'CPMSD-ADMIN', 'CPMSD/ADMIN', 1)"
        ))
        connection.execute(text(
            "INSERT INTO users (id, name, username, email, hashed_password, role, unit_id) VALUES "
            "(1, 'Alice', 'alice', 'alice@example.com', '', 'encoder', 1), "
            "(2, 'Bob', 'bob', 'bob@example.com', '', 'pending', 1), "
            "(3, 'Carol', 'carol', 'carol@example.com', '', 'clerk', 2)"
        ))

    monkeypatch.setattr(database, 'engine', engine)
    monkeypatch.setattr(database, '_user_schema_checked', False)
    return engine


def test_ensure_user_schema_adds_and_backfills_exclusive_holder(legacy_engine) -> None:
    database.ensure_user_schema()

    columns = {column['name'] for column in inspect(legacy_engine).get_columns('users')}
    assert 'exclusive_unit_id' in columns
    with legacy_engine.connect() as connection:
        rows = dict(connection.execute(text('SELECT id, exclusive_unit_id FROM users')).all())
    assert rows == {1: 1, 2: None, 3: None}


def test_ensure_user_schema_index_blocks_second_live_holder(legacy_engine) -> None:
    database.ensure_user_schema()

    with pytest.raises(IntegrityError) as exception_info:
        with legacy_engine.begin() as connection:
            connection.execute(text('UPDATE users SET role = :role, exclusive_unit_id = 1 WHERE id = 2'), {'role': 'clerk'})

    assert 'exclusive_unit_id' in str(exception_info.value)


def test_ensure_user_schema_is_idempotent(legacy_engine, monkeypatch: pytest.MonkeyPatch) -> None:
    database.ensure_user_schema()
    monkeypatch.setattr(database, '_user_schema_checked', False)

    database.ensure_user_schema()

    assert database._user_schema_checked is True


def test_transaction_rolls_back_on_error(db) -> None:
    with pytest.raises(RuntimeError):
        with transaction(db):
            db.add(Unit(name='Dispatch', code='CPMSD-DO', full_name='CPMSD/DO'))
            db.flush()
            raise RuntimeError('boom')

    assert db.query(Unit).count() == 0


def test_transaction_commits_on_success(db) -> None:
    with transaction(db):
        db.add(Unit(name='Dispatch', code='CPMSD-DO', full_name='CPMSD/DO'))

    db.rollback()
    assert db.query(Unit).count() == 1
