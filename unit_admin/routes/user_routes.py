import logging
import re
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from unit_admin.auth.dependencies import require_admin
from unit_admin.auth.passwords import hash_password
from unit_admin.core import config
from unit_admin.database import transaction
from unit_admin.models.unit import Unit
from unit_admin.models.user import APPROVABLE_ROLES, ASSIGNABLE_ROLES, Role, User
from unit_admin.routes.common import (
    MessageResponse,
    database_unavailable,
    ensure_database_ready,
    get_db,
    validation_error,
)
from unit_admin.routes.unit_routes import UnitSummaryResponse
from unit_admin.services.assignments import (
    AssignmentCandidate,
    AssignmentError,
    approve_batch,
    assign_unit,
    list_taken_do_units,
    lock_user,
)

router = APIRouter(tags=['users'])

logger = logging.getLogger(__name__)

MAX_FIELD_LENGTH = 255
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
INVALID_ROLE_MESSAGE = 'The selected role is invalid.'
INVALID_UNIT_MESSAGE = 'The selected unit id is invalid.'


def normalize_required_text(value: str, label: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f'The {label} field is required.')
    if len(normalized) > MAX_FIELD_LENGTH:
        raise ValueError(f'The {label} must not be greater than {MAX_FIELD_LENGTH} characters.')
    return normalized


def normalize_email(value: str) -> str:
    normalized = normalize_required_text(value, 'email').lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError('The email field must be a valid email address.')
    return normalized


def validate_password_pair(password: str, password_confirmation: str | None) -> None:
    if len(password) < config.MIN_PASSWORD_LENGTH:
        raise ValueError(f'The password must be at least {config.MIN_PASSWORD_LENGTH} characters.')
    if password != password_confirmation:
        raise ValueError('The password field confirmation does not match.')


def validate_role(value: Role, allowed: tuple[Role, ...]) -> Role:
    if value not in allowed:
        raise ValueError(INVALID_ROLE_MESSAGE)
    return value


class CreateUserRequest(BaseModel):
    name: str
    username: str
    email: str
    password: str
    password_confirmation: str | None = None
    role: Role
    unit_id: int | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        return normalize_required_text(value, 'name')

    @field_validator('username')
    @classmethod
    def validate_username(cls, value: str) -> str:
        return normalize_required_text(value, 'username')

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator('role')
    @classmethod
    def validate_assignable_role(cls, value: Role) -> Role:
        return validate_role(value, ASSIGNABLE_ROLES)

    @model_validator(mode='after')
    def validate_password(self) -> 'CreateUserRequest':
        validate_password_pair(self.password, self.password_confirmation)
        return self


class UpdateUserRequest(BaseModel):
    """Full profile update, or a role-only update when ``name`` is omitted."""

    role: Role
    name: str | None = None
    username: str | None = None
    email: str | None = None
    unit_id: int | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_required_text(value, 'name')

    @field_validator('username')
    @classmethod
    def validate_username(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_required_text(value, 'username')

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_email(value)

    @field_validator('role')
    @classmethod
    def validate_assignable_role(cls, value: Role) -> Role:
        return validate_role(value, ASSIGNABLE_ROLES)

    @property
    def is_role_only(self) -> bool:
        return self.name is None


class ResetPasswordRequest(BaseModel):
    password: str
    password_confirmation: str | None = None

    @model_validator(mode='after')
    def validate_password(self) -> 'ResetPasswordRequest':
        validate_password_pair(self.password, self.password_confirmation)
        return self


class ApproveUserRequest(BaseModel):
    role: Role
    unit_id: int

    @field_validator('role')
    @classmethod
    def validate_approvable_role(cls, value: Role) -> Role:
        return validate_role(value, APPROVABLE_ROLES)


class BulkApproveItem(BaseModel):
    id: int
    role: Role
    unit_id: int

    @field_validator('role')
    @classmethod
    def validate_approvable_role(cls, value: Role) -> Role:
        return validate_role(value, APPROVABLE_ROLES)


class BulkApproveRequest(BaseModel):
    users: list[BulkApproveItem]

    @field_validator('users')
    @classmethod
    def validate_users(cls, value: list[BulkApproveItem]) -> list[BulkApproveItem]:
        if not value:
            raise ValueError('The users field is required.')
        return value


class BulkRejectRequest(BaseModel):
    user_ids: list[int]

    @field_validator('user_ids')
    @classmethod
    def validate_user_ids(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError('The user ids field is required.')
        return value


class UserResponse(BaseModel):
    id: int
    name: str
    username: str
    email: str
    role: str
    unit_id: int | None = None
    unit: UnitSummaryResponse | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class UserListResponse(BaseModel):
    users: list[UserResponse]
    units: list[UnitSummaryResponse]


class TakenDoUnitResponse(BaseModel):
    unit_name: str
    user_name: str


class PendingUserListResponse(BaseModel):
    pending_users: list[UserResponse]
    units: list[UnitSummaryResponse]
    taken_do_units: dict[str, TakenDoUnitResponse]


class BulkApproveResponse(BaseModel):
    message: str
    approved: int
    skipped_user_ids: list[int]


def get_user_or_404(db: Session, user_id: int, lock: bool = False) -> User:
    user = lock_user(db, user_id) if lock else db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='User not found.',
        )
    return user


def list_active_units(db: Session) -> list[Unit]:
    return db.query(Unit).filter(Unit.is_active.is_(True)).order_by(Unit.full_name.asc()).all()


def ensure_unit_exists(db: Session, unit_id: int | None, field: str = 'unit_id') -> None:
    if unit_id is not None and db.get(Unit, unit_id) is None:
        raise validation_error({field: INVALID_UNIT_MESSAGE})


def find_taken_identity_fields(
    db: Session,
    username: str,
    email: str,
    ignore_user_id: int | None = None,
) -> dict[str, str]:
    errors: dict[str, str] = {}

    username_query = db.query(User.id).filter(User.username == username)
    email_query = db.query(User.id).filter(User.email == email)
    if ignore_user_id is not None:
        username_query = username_query.filter(User.id != ignore_user_id)
        email_query = email_query.filter(User.id != ignore_user_id)

    if username_query.first() is not None:
        errors['username'] = 'The username has already been taken.'
    if email_query.first() is not None:
        errors['email'] = 'The email has already been taken.'

    return errors


def ensure_not_self(target_user_id: int, current_user_id: int) -> None:
    if target_user_id == current_user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='You cannot delete your own account.',
        )


@router.get('', response_model=UserListResponse)
def list_users(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        users = (
            db.query(User)
            .options(joinedload(User.unit))
            .order_by(User.created_at.desc(), User.id.desc())
            .all()
        )

        return UserListResponse(
            users=[UserResponse.model_validate(user) for user in users],
            units=[UnitSummaryResponse.model_validate(unit) for unit in list_active_units(db)],
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/pending', response_model=PendingUserListResponse)
def list_pending_users(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        pending_users = (
            db.query(User)
            .filter(User.role == Role.PENDING.value)
            .order_by(User.created_at.desc(), User.id.desc())
            .all()
        )

        return PendingUserListResponse(
            pending_users=[UserResponse.model_validate(user) for user in pending_users],
            units=[UnitSummaryResponse.model_validate(unit) for unit in list_active_units(db)],
            taken_do_units={
                unit_id: TakenDoUnitResponse(**holder)
                for unit_id, holder in list_taken_do_units(db).items()
            },
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    data: CreateUserRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        errors = find_taken_identity_fields(db, data.username, data.email)
        if errors:
            raise validation_error(errors)
        ensure_unit_exists(db, data.unit_id)

        with transaction(db):
            user = User(
                name=data.name,
                username=data.username,
                email=data.email,
                hashed_password=hash_password(data.password),
            )
            db.add(user)
            assign_unit(db, user, data.role, data.unit_id)

        return MessageResponse(message='User created successfully.')
    except AssignmentError as exc:
        raise validation_error({exc.field: exc.message}) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.put('/{user_id}', response_model=MessageResponse)
def update_user(
    user_id: int,
    data: UpdateUserRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        user = get_user_or_404(db, user_id, lock=True)

        if data.is_role_only:
            old_role = user.role
            logger.info(
                'Updating user role: user_id=%s old_role=%s new_role=%s',
                user.id,
                old_role,
                data.role.value,
            )

            with transaction(db):
                assign_unit(db, user, data.role, user.unit_id)

            logger.info('User role updated: user_id=%s current_role=%s', user_id, data.role.value)
            return MessageResponse(message='User role updated successfully.')

        missing = {
            field: f'The {field} field is required.'
            for field in ('username', 'email')
            if getattr(data, field) is None
        }
        if missing:
            raise validation_error(missing)

        errors = find_taken_identity_fields(db, data.username, data.email, ignore_user_id=user.id)
        if errors:
            raise validation_error(errors)
        ensure_unit_exists(db, data.unit_id)

        with transaction(db):
            user.name = data.name
            user.username = data.username
            user.email = data.email
            assign_unit(db, user, data.role, data.unit_id)

        return MessageResponse(message='User updated successfully.')
    except AssignmentError as exc:
        raise validation_error({exc.field: exc.message}) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{user_id}', response_model=MessageResponse)
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_not_self(user_id, current_user.id)
    ensure_database_ready()

    try:
        user = get_user_or_404(db, user_id)

        with transaction(db):
            db.delete(user)

        return MessageResponse(message='User deleted successfully.')
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{user_id}/reset-password', response_model=MessageResponse)
def reset_password(
    user_id: int,
    data: ResetPasswordRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        user = get_user_or_404(db, user_id)

        with transaction(db):
            user.hashed_password = hash_password(data.password)

        return MessageResponse(message='Password reset successfully.')
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{user_id}/approve', response_model=MessageResponse)
def approve_user(
    user_id: int,
    data: ApproveUserRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        user = get_user_or_404(db, user_id, lock=True)
        ensure_unit_exists(db, data.unit_id)

        with transaction(db):
            assign_unit(db, user, data.role, data.unit_id)

        return MessageResponse(message='User approved successfully')
    except AssignmentError as exc:
        raise validation_error({exc.field: exc.message}) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/bulk-approve', response_model=BulkApproveResponse)
def bulk_approve(
    data: BulkApproveRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        requested_user_ids = {item.id for item in data.users}
        requested_unit_ids = {item.unit_id for item in data.users}
        known_user_ids = {
            row.id for row in db.query(User.id).filter(User.id.in_(requested_user_ids)).all()
        }
        known_unit_ids = {
            row.id for row in db.query(Unit.id).filter(Unit.id.in_(requested_unit_ids)).all()
        }

        errors: dict[str, str] = {}
        for index, item in enumerate(data.users):
            if item.id not in known_user_ids:
                errors[f'users.{index}.id'] = f'The selected users.{index}.id is invalid.'
            if item.unit_id not in known_unit_ids:
                errors[f'users.{index}.unit_id'] = f'The selected users.{index}.unit_id is invalid.'
        if errors:
            raise validation_error(errors)

        candidates = [
            AssignmentCandidate(user_id=item.id, unit_id=item.unit_id, role=item.role)
            for item in data.users
        ]
        result = approve_batch(db, candidates)

        return BulkApproveResponse(
            message='Users approved successfully',
            approved=result.applied,
            skipped_user_ids=result.skipped_user_ids,
        )
    except AssignmentError as exc:
        raise validation_error({exc.field: exc.message}) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/bulk-reject', response_model=MessageResponse)
def bulk_reject(
    data: BulkRejectRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        # Only pending sign-ups are rejected; approved accounts go through delete_user.
        with transaction(db):
            deleted = (
                db.query(User)
                .filter(User.id.in_(data.user_ids), User.role == Role.PENDING.value)
                .delete(synchronize_session=False)
            )

        logger.info('Rejected %d of %d requested users', deleted, len(data.user_ids))
        return MessageResponse(message='Users rejected successfully')
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
