import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from unit_admin.database import Base  # noqa: E402
from unit_admin.models.unit import Unit  # noqa: E402
from unit_admin.models.user import Role, User  # noqa: E402
from unit_admin.services.assignments import exclusive_unit_id_for  # noqa: E402


@pytest.fixture
def db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=[Unit.__table__, User.__table__])

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine, tables=[User.__table__, Unit.__table__])


@pytest.fixture(autouse=True)
def skip_schema_migration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('unit_admin.routes.user_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('unit_admin.routes.unit_routes.ensure_database_ready', lambda: None)


@pytest.fixture
def make_unit(db):
    def _make_unit(full_name: str, code: str | None = None, is_active: bool = True) -> Unit:
        unit = Unit(
            name=full_name.split('/')[-1].title(),
            code=code or full_name.replace('/', '-'),
            full_name=full_name,
            is_active=is_active,
        )
        db.add(unit)
        db.commit()
        db.refresh(unit)
        return unit

    return _make_unit


@pytest.fixture
def make_user(db):
    def _make_user(name: str, role: Role = Role.PENDING, unit: Unit | None = None) -> User:
        username = name.lower().replace(' ', '.')
        user = User(
            name=name,
            username=username,
            email=f'{username}@example.com',
            hashed_password='',
            role=role.value,
            unit_id=unit.id if unit else None,
            exclusive_unit_id=exclusive_unit_id_for(unit, role.value),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def admin(make_user) -> User:
    return make_user('Site Admin', role=Role.ADMIN)


@pytest.fixture
def session_pair(tmp_path):
    """Two sessions on one file-backed database, for interleaving writers."""
    engine = create_engine(
        f'sqlite:///{tmp_path / "unit_admin.db"}',
        connect_args={'timeout': 0.1},
    )
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=[Unit.__table__, User.__table__])

    first = session_factory()
    second = session_factory()
    try:
        yield first, second
    finally:
        first.close()
        second.close()
        engine.dispose()
