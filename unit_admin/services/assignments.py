"""DO unit assignment rules.

A unit whose normalized full name ends in ``/DO`` may have at most one live
(non-pending) user at a time. Every write that gives a user a role or a unit
goes through :func:`assign_unit`, which checks availability against the
current transaction, locks the unit row where the backend supports it, and
keeps ``User.exclusive_unit_id`` in step so the unique constraint on that
column backs the rule up at commit time.

Bulk approvals are checked twice: :func:`detect_batch_conflicts` rejects a
batch that proposes several users for one DO unit before anything is
written, and :func:`apply_batch` re-checks every item inside the
transaction it commits in.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from unit_admin.database import transaction
from unit_admin.models.unit import Unit
from unit_admin.models.user import Role, User

logger = logging.getLogger(__name__)

DO_UNIT_SUFFIX = '/DO'
EXCLUSIVE_UNIT_COLUMN = 'exclusive_unit_id'


class AssignmentError(Exception):
    """A unit assignment the caller can correct, reported against one request field."""

    field = 'unit_id'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AssignmentConflict(AssignmentError):
    field = 'unit_id'

    def __init__(self, unit_name: str, holder_name: str):
        self.unit_name = unit_name
        self.holder_name = holder_name
        super().__init__(f'The unit {unit_name} is already assigned to {holder_name}.')


class BatchAssignmentConflict(AssignmentError):
    field = 'users'

    def __init__(self, unit_name: str, attempted_count: int):
        self.unit_name = unit_name
        self.attempted_count = attempted_count
        super().__init__(f'Bulk approval failed: {unit_name} can only have one approved user.')


class UnitHolderConflict(AssignmentError):
    field = 'full_name'

    def __init__(self, unit_name: str, holder_count: int):
        self.unit_name = unit_name
        self.holder_count = holder_count
        super().__init__(f'The unit {unit_name} already has more than one approved user.')


@dataclass(frozen=True)
class AssignmentCandidate:
    user_id: int
    unit_id: int
    role: Role


@dataclass
class BatchResult:
    applied: int = 0
    skipped_user_ids: list[int] = field(default_factory=list)


def is_do_unit(full_name: str | None) -> bool:
    if not full_name:
        return False
    return str(full_name).strip().upper().endswith(DO_UNIT_SUFFIX)


def exclusive_unit_id_for(unit: Unit | None, role: str) -> int | None:
    if unit is None or role == Role.PENDING.value or not is_do_unit(unit.full_name):
        return None
    return unit.id


def find_live_holder(db: Session, unit_id: int, exclude_user_id: int | None = None) -> User | None:
    query = db.query(User).filter(
        User.unit_id == unit_id,
        User.role != Role.PENDING.value,
    )
    if exclude_user_id is not None:
        query = query.filter(User.id != exclude_user_id)

    return query.order_by(User.id.asc()).first()


def lock_user(db: Session, user_id: int) -> User | None:
    return (
        db.query(User)
        .filter(User.id == user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def lock_unit(db: Session, unit_id: int) -> Unit | None:
    return (
        db.query(Unit)
        .filter(Unit.id == unit_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def check_available(
    db: Session,
    unit_id: int,
    user_id: int | None = None,
    exclude_user_id: int | None = None,
    lock: bool = False,
) -> Unit | None:
    """Raise :class:`AssignmentConflict` if ``unit_id`` is a DO unit someone else already holds.

    Unknown units and non-DO units always pass. With ``lock=True`` the unit
    row is re-read ``FOR UPDATE``, so a concurrent rename or assignment of
    the same unit either finishes first and is seen here, or waits for this
    transaction. Returns the unit as read.
    """
    if lock:
        unit = lock_unit(db, unit_id)
    else:
        unit = db.query(Unit).filter(Unit.id == unit_id).first()

    if unit is None or not is_do_unit(unit.full_name):
        return unit

    holder = find_live_holder(db, unit_id, exclude_user_id=exclude_user_id)
    if holder is None:
        return unit

    logger.warning(
        'Rejected assignment of user %s to %s: already held by user %s',
        user_id,
        unit.full_name,
        holder.id,
    )
    raise AssignmentConflict(unit.full_name, holder.name)


def _flush_assignment(db: Session, user: User, unit_id: int | None) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        if EXCLUSIVE_UNIT_COLUMN not in str(exc.orig):
            raise
        user_id = user.id
        db.rollback()

        unit = db.get(Unit, unit_id)
        holder = find_live_holder(db, unit_id, exclude_user_id=user_id)
        unit_name = unit.full_name if unit else 'selected DO unit'
        holder_name = holder.name if holder else 'another user'
        logger.warning('Unique holder constraint rejected user %s for %s', user_id, unit_name)
        raise AssignmentConflict(unit_name, holder_name) from exc


def assign_unit(db: Session, user: User, role: Role | str, unit_id: int | None) -> None:
    """Give ``user`` a role and unit. The caller owns the surrounding transaction.

    Callers lock the user row before calling so every write path takes the
    user lock ahead of the unit lock.
    """
    role = Role(role)
    unit = None

    if unit_id is not None:
        if role != Role.PENDING:
            unit = check_available(db, unit_id, user.id, exclude_user_id=user.id, lock=True)
        if unit is None:
            unit = db.get(Unit, unit_id)

    user.role = role.value
    user.unit_id = unit_id
    user.exclusive_unit_id = exclusive_unit_id_for(unit, role.value)

    _flush_assignment(db, user, unit_id)


def detect_batch_conflicts(db: Session, candidates: Sequence[AssignmentCandidate]) -> None:
    """Reject a batch that names more than one user for the same DO unit.

    Read-only. The first offending unit in input order is reported.
    """
    unit_ids = list(dict.fromkeys(candidate.unit_id for candidate in candidates))
    if not unit_ids:
        return

    do_units = {
        unit.id: unit
        for unit in db.query(Unit).filter(Unit.id.in_(unit_ids)).all()
        if is_do_unit(unit.full_name)
    }

    groups: dict[int, list[AssignmentCandidate]] = {}
    for candidate in candidates:
        if candidate.unit_id in do_units:
            groups.setdefault(candidate.unit_id, []).append(candidate)

    for unit_id, group in groups.items():
        if len(group) > 1:
            unit_name = do_units[unit_id].full_name
            logger.warning(
                'Bulk approval names %d users for %s: %s',
                len(group),
                unit_name,
                [candidate.user_id for candidate in group],
            )
            raise BatchAssignmentConflict(unit_name, len(group))


def apply_batch(db: Session, candidates: Iterable[AssignmentCandidate]) -> BatchResult:
    """Approve every still-pending candidate in one transaction.

    Users that are missing or no longer pending are skipped. A conflict on
    any item rolls back the whole batch.
    """
    result = BatchResult()

    with transaction(db):
        for candidate in candidates:
            user = lock_user(db, candidate.user_id)
            if user is None or not user.is_pending:
                result.skipped_user_ids.append(candidate.user_id)
                continue

            assign_unit(db, user, candidate.role, candidate.unit_id)
            result.applied += 1

    logger.info(
        'Bulk approval applied %d users, skipped %s',
        result.applied,
        result.skipped_user_ids,
    )
    return result


def approve_batch(db: Session, candidates: Sequence[AssignmentCandidate]) -> BatchResult:
    detect_batch_conflicts(db, candidates)
    return apply_batch(db, candidates)


def sync_unit_holders(db: Session, unit: Unit) -> None:
    """Recompute the exclusive holder marker for ``unit``'s users after a rename.

    The rename is written and the unit row locked before the holders are
    counted, so an assignment racing the rename either commits first and is
    counted, or re-reads the new name under its own unit lock.
    """
    db.flush()
    lock_unit(db, unit.id)

    live_users = (
        db.query(User)
        .filter(User.unit_id == unit.id, User.role != Role.PENDING.value)
        .order_by(User.id.asc())
        .all()
    )

    if is_do_unit(unit.full_name) and len(live_users) > 1:
        raise UnitHolderConflict(unit.full_name, len(live_users))

    for user in live_users:
        user.exclusive_unit_id = exclusive_unit_id_for(unit, user.role)

    db.flush()


def list_taken_do_units(db: Session) -> dict[str, dict[str, str]]:
    live_users = (
        db.query(User)
        .join(Unit, User.unit_id == Unit.id)
        .filter(User.role != Role.PENDING.value)
        .order_by(User.id.asc())
        .all()
    )

    return {
        str(user.unit_id): {
            'unit_name': user.unit.full_name,
            'user_name': user.name,
        }
        for user in live_users
        if is_do_unit(user.unit.full_name)
    }
