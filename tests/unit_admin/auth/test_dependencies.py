import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from unit_admin import print_access_token
from unit_admin.auth import jwt_handler
from unit_admin.auth.dependencies import get_current_user, require_admin
from unit_admin.auth.passwords import hash_password, verify_password
from unit_admin.core import config
from unit_admin.models.user import Role


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme='Bearer', credentials=token)


def test_access_token_carries_email_and_role() -> None:
    token = jwt_handler.create_access_token('admin@example.com', role=Role.ADMIN.value, expires_minutes=5)

    payload = jwt_handler.decode_access_token(token)

    assert payload['sub'] == 'admin@example.com'
    assert payload['role'] == 'admin'
    assert payload['exp'] - payload['iat'] == 300


def test_get_current_user_rejects_token_without_expiry(db, admin) -> None:
    token = jwt.encode({'sub': admin.email}, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)

    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=_credentials(token), db=db)

    assert exception_info.value.status_code == 401
    assert exception_info.value.detail == 'Invalid token'


def test_get_current_user_resolves_token_subject(db, admin) -> None:
    token = jwt_handler.create_access_token(admin.email)

    user = get_current_user(credentials=_credentials(token), db=db)

    assert user.id == admin.id


def test_get_current_user_rejects_foreign_signature(db, admin) -> None:
    token = jwt.encode({'sub': admin.email}, 'not-the-secret', algorithm=config.JWT_ALGORITHM)

    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=_credentials(token), db=db)

    assert exception_info.value.status_code == 401
    assert exception_info.value.detail == 'Invalid token'


def test_get_current_user_rejects_unknown_subject(db) -> None:
    token = jwt_handler.create_access_token('ghost@example.com')

    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=_credentials(token), db=db)

    assert exception_info.value.status_code == 401
    assert exception_info.value.detail == 'User not found'


def test_require_admin_rejects_other_roles(make_user) -> None:
    clerk = make_user('Clerk User', role=Role.CLERK)

    with pytest.raises(HTTPException) as exception_info:
        require_admin(current_user=clerk)

    assert exception_info.value.status_code == 403


def test_require_admin_returns_admin(admin) -> None:
    assert require_admin(current_user=admin) is admin


def test_password_hash_verifies_only_original_password() -> None:
    hashed = hash_password('secret-pass')

    assert verify_password('secret-pass', hashed)
    assert not verify_password('other-pass', hashed)
    assert not verify_password('secret-pass', '')


def test_print_access_token_prints_token_for_known_user(db, admin, monkeypatch, capsys) -> None:
    email = admin.email
    monkeypatch.setattr(print_access_token, 'SessionLocal', lambda: db)

    print_access_token.main([email.upper()])

    token = capsys.readouterr().out.strip()
    payload = jwt_handler.decode_access_token(token)
    assert payload['sub'] == email
    assert payload['role'] == Role.ADMIN.value


def test_print_access_token_exits_for_unknown_user(db, monkeypatch) -> None:
    monkeypatch.setattr(print_access_token, 'SessionLocal', lambda: db)

    with pytest.raises(SystemExit) as exception_info:
        print_access_token.main(['ghost@example.com'])

    assert exception_info.value.code == 1
