import logging
import math
import re
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from unit_admin.auth.dependencies import require_admin
from unit_admin.core import config
from unit_admin.database import transaction
from unit_admin.models.unit import Unit
from unit_admin.models.user import User
from unit_admin.routes.common import (
    MessageResponse,
    database_unavailable,
    ensure_database_ready,
    get_db,
    validation_error,
)
from unit_admin.services.assignments import AssignmentError, sync_unit_holders

router = APIRouter(tags=['units'])

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MAX_CODE_LENGTH = 50
FULL_NAME_PATTERN = re.compile(r'^[A-Za-z0-9]+/[A-Za-z0-9]+$')
FULL_NAME_FORMAT_MESSAGE = 'Full Name must follow the format DEPARTMENT/UNIT (example: CPMSD/DO).'
FULL_NAME_TAKEN_MESSAGE = 'This unit already exists.'
CODE_TAKEN_MESSAGE = 'The code has already been taken.'


class UnitRequest(BaseModel):
    name: str
    code: str
    full_name: str
    description: str | None = None
    is_active: bool = True

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('The name field is required.')
        if len(normalized) > MAX_NAME_LENGTH:
            raise ValueError(f'The name must not be greater than {MAX_NAME_LENGTH} characters.')
        return normalized

    @field_validator('code')
    @classmethod
    def validate_code(cls, value: str) -> str:
        normalized = value.strip().upper()
        if not normalized:
            raise ValueError('The code field is required.')
        if len(normalized) > MAX_CODE_LENGTH:
            raise ValueError(f'The code must not be greater than {MAX_CODE_LENGTH} characters.')
        return normalized

    @field_validator('full_name')
    @classmethod
    def validate_full_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('The full name field is required.')
        if len(normalized) > MAX_NAME_LENGTH:
            raise ValueError(f'The full name must not be greater than {MAX_NAME_LENGTH} characters.')
        if not FULL_NAME_PATTERN.match(normalized):
            raise ValueError(FULL_NAME_FORMAT_MESSAGE)
        return normalized.upper()

    @field_validator('description')
    @classmethod
    def validate_description(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        return normalized or None


class UnitSummaryResponse(BaseModel):
    id: int
    name: str
    code: str
    full_name: str
    is_active: bool

    class Config:
        from_attributes = True


class UnitResponse(BaseModel):
    id: int
    name: str
    code: str
    full_name: str
    description: str | None = None
    is_active: bool
    created_at: datetime | None = None
    users_count: int = 0


class UnitPageResponse(BaseModel):
    data: list[UnitResponse]
    current_page: int
    last_page: int
    per_page: int
    total: int
    filters: dict[str, str | bool | None]


def get_unit_or_404(db: Session, unit_id: int) -> Unit:
    unit = db.get(Unit, unit_id)
    if unit is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Unit not found.',
        )
    return unit


def find_taken_unit_fields(
    db: Session,
    code: str,
    full_name: str,
    ignore_unit_id: int | None = None,
) -> dict[str, str]:
    errors: dict[str, str] = {}

    code_query = db.query(Unit.id).filter(Unit.code == code)
    full_name_query = db.query(Unit.id).filter(Unit.full_name == full_name)
    if ignore_unit_id is not None:
        code_query = code_query.filter(Unit.id != ignore_unit_id)
        full_name_query = full_name_query.filter(Unit.id != ignore_unit_id)

    if code_query.first() is not None:
        errors['code'] = CODE_TAKEN_MESSAGE
    if full_name_query.first() is not None:
        errors['full_name'] = FULL_NAME_TAKEN_MESSAGE

    return errors


def to_unit_response(unit: Unit, users_count: int) -> UnitResponse:
    return UnitResponse(
        id=unit.id,
        name=unit.name,
        code=unit.code,
        full_name=unit.full_name,
        description=unit.description,
        is_active=bool(unit.is_active),
        created_at=unit.created_at,
        users_count=users_count or 0,
    )


@router.get('', response_model=UnitPageResponse)
def list_units(
    search: str | None = Query(default=None),
    status_filter: bool | None = Query(default=None, alias='status'),
    page: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        users_count = (
            db.query(User.unit_id.label('unit_id'), func.count(User.id).label('users_count'))
            .group_by(User.unit_id)
            .subquery()
        )
        query = db.query(Unit, func.coalesce(users_count.c.users_count, 0)).outerjoin(
            users_count,
            users_count.c.unit_id == Unit.id,
        )

        normalized_search = (search or '').strip()
        if normalized_search:
            pattern = f'%{normalized_search}%'
            query = query.filter(
                or_(
                    Unit.name.ilike(pattern),
                    Unit.code.ilike(pattern),
                    Unit.full_name.ilike(pattern),
                )
            )

        if status_filter is not None:
            query = query.filter(Unit.is_active.is_(status_filter))

        per_page = config.UNITS_PER_PAGE
        total = query.count()
        last_page = max(1, math.ceil(total / per_page))
        rows = (
            query.order_by(Unit.created_at.desc(), Unit.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )

        return UnitPageResponse(
            data=[to_unit_response(unit, count) for unit, count in rows],
            current_page=page,
            last_page=last_page,
            per_page=per_page,
            total=total,
            filters={'search': search, 'status': status_filter},
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def create_unit(
    data: UnitRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        errors = find_taken_unit_fields(db, data.code, data.full_name)
        if errors:
            raise validation_error(errors)

        with transaction(db):
            db.add(
                Unit(
                    name=data.name,
                    code=data.code,
                    full_name=data.full_name,
                    description=data.description,
                    is_active=data.is_active,
                )
            )

        return MessageResponse(message='Unit created successfully.')
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.put('/{unit_id}', response_model=MessageResponse)
def update_unit(
    unit_id: int,
    data: UnitRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        unit = get_unit_or_404(db, unit_id)

        errors = find_taken_unit_fields(db, data.code, data.full_name, ignore_unit_id=unit.id)
        if errors:
            raise validation_error(errors)

        with transaction(db):
            unit.name = data.name
            unit.code = data.code
            unit.full_name = data.full_name
            unit.description = data.description
            unit.is_active = data.is_active
            sync_unit_holders(db, unit)

        return MessageResponse(message='Unit updated successfully.')
    except AssignmentError as exc:
        raise validation_error({exc.field: exc.message}) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{unit_id}', response_model=MessageResponse)
def delete_unit(
    unit_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        unit = get_unit_or_404(db, unit_id)

        assigned_users = db.query(func.count(User.id)).filter(User.unit_id == unit.id).scalar()
        if assigned_users:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='Cannot delete unit with assigned users.',
            )

        full_name = unit.full_name
        with transaction(db):
            db.delete(unit)

        logger.info('Deleted unit %s (%s)', unit_id, full_name)
        return MessageResponse(message='Unit deleted successfully.')
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
