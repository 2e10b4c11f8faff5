"""Borrowing domain service logic."""
from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Iterable, List, Optional

from flask import current_app
from sqlalchemy import or_, update

from models import OUTSTANDING_STATUSES, Bicycle, Borrowing, User, as_utc, db, utcnow
from services.certificates import CertificateService
from services.errors import (
    AccountSuspended,
    AlreadyBorrowing,
    BicycleUnavailable,
    Forbidden,
    NotCertified,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from services.transaction import transaction


def recompute_overdue(borrowing, now: Optional[datetime.datetime] = None) -> str:
    """Effective status of a borrowing at ``now``; never touches the record."""
    now = now or utcnow()
    due = as_utc(borrowing.expected_return_date)
    if borrowing.status == 'active' and due is not None and now > due:
        return 'overdue'
    return borrowing.status


@dataclass(frozen=True)
class BorrowResult:
    borrowing: Borrowing
    bicycle: Bicycle


class BorrowService:
    """Reservation and return state machine for bicycles.

    ``active -> overdue -> returned`` and ``active -> returned``; nothing
    leaves ``returned``. Each transition and its bicycle flag flip commit
    together or not at all.
    """

    def __init__(self, certificates: Optional[CertificateService] = None):
        self.certificates = certificates or CertificateService()

    def _validate_duration(self, duration_hours) -> int:
        try:
            hours = int(duration_hours)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError('Borrowing duration must be a whole number of hours.') from None
        if isinstance(duration_hours, float) and duration_hours != hours:
            raise ValidationError('Borrowing duration must be a whole number of hours.')
        if hours < 1:
            raise ValidationError('Borrowing duration must be at least 1 hour.')
        max_hours = current_app.config['MAX_BORROW_HOURS']
        if current_app.config['ENFORCE_MAX_BORROW_HOURS'] and hours > max_hours:
            raise ValidationError(f'Borrowing time should not exceed {max_hours} hours.')
        return hours

    def _clearance(self, user: User) -> str:
        try:
            return self.certificates.resolve_status(user.id)
        except PersistenceError:
            current_app.logger.warning('Treating user %s as uncertified after lookup failure', user.id)
            return 'none'

    def reserve(
        self,
        *,
        user_id: int,
        bicycle_id: int,
        duration_hours,
        now: Optional[datetime.datetime] = None,
    ) -> BorrowResult:
        hours = self._validate_duration(duration_hours)
        now = now or utcnow()
        try:
            expected_return = now + datetime.timedelta(hours=hours)
        except OverflowError:
            raise ValidationError('Borrowing duration is too long.') from None
        user = db.session.get(User, user_id)
        if not user:
            raise NotFoundError('User not found.')
        if user.status == 'suspended':
            raise AccountSuspended('Your account is suspended. Please upload a new medical certificate.')
        if self._clearance(user) != 'approved':
            raise NotCertified('An approved medical certificate is required to borrow a bicycle.')

        with transaction('Failed to reserve bicycle.', conflict_message='This bicycle has just been reserved by someone else.'):
            if self.active_borrowing_for_user(user.id):
                raise AlreadyBorrowing(
                    'You already have an active bicycle borrowing. Please return it before borrowing another one.'
                )
            bicycle = db.session.get(Bicycle, bicycle_id)
            if not bicycle:
                raise NotFoundError('Bicycle not found.')
            if not bicycle.is_available:
                raise BicycleUnavailable('This bicycle is not available.')
            claimed = db.session.execute(
                update(Bicycle)
                .where(Bicycle.id == bicycle.id, Bicycle.is_available.is_(True))
                .values(is_available=False, updated_at=now)
            ).rowcount
            if claimed != 1:
                raise BicycleUnavailable('This bicycle is not available.')
            borrowing = Borrowing(
                bicycle_id=bicycle.id,
                user_id=user.id,
                borrow_date=now,
                expected_return_date=expected_return,
                status='active',
            )
            db.session.add(borrowing)
            db.session.flush()
        current_app.logger.info(
            'User %s reserved bicycle %s for %s hours (borrowing %s)', user.id, bicycle.id, hours, borrowing.id
        )
        return BorrowResult(borrowing=borrowing, bicycle=bicycle)

    def mark_returned(
        self,
        *,
        borrowing_id: int,
        acting_user: Optional[User] = None,
        now: Optional[datetime.datetime] = None,
    ) -> BorrowResult:
        now = now or utcnow()
        with transaction('Failed to return bicycle.'):
            borrowing = db.session.get(Borrowing, borrowing_id)
            if not borrowing:
                raise NotFoundError('Borrowing record not found.')
            if acting_user and borrowing.user_id != acting_user.id and not acting_user.is_admin:
                raise Forbidden('You can only return your own borrowings.')
            if borrowing.status == 'returned':
                return BorrowResult(borrowing=borrowing, bicycle=borrowing.bicycle)
            closed = db.session.execute(
                update(Borrowing)
                .where(Borrowing.id == borrowing.id, Borrowing.status.in_(OUTSTANDING_STATUSES))
                .values(status='returned', return_date=now, updated_at=now)
            ).rowcount
            if closed == 1:
                db.session.execute(
                    update(Bicycle).where(Bicycle.id == borrowing.bicycle_id).values(is_available=True, updated_at=now)
                )
        db.session.refresh(borrowing)
        if closed == 1:
            current_app.logger.info('Borrowing %s returned; bicycle %s available', borrowing.id, borrowing.bicycle_id)
        return BorrowResult(borrowing=borrowing, bicycle=borrowing.bicycle)

    def refresh_overdue(
        self, borrowings: Iterable[Borrowing], now: Optional[datetime.datetime] = None
    ) -> List[Borrowing]:
        """Persist ``active -> overdue`` for whichever of ``borrowings`` are late."""
        now = now or utcnow()
        borrowings = list(borrowings)
        late = [b for b in borrowings if b.status == 'active' and recompute_overdue(b, now) == 'overdue']
        if late:
            with transaction('Failed to mark borrowings overdue.'):
                for borrowing in late:
                    borrowing.status = 'overdue'
            current_app.logger.info('Marked %d borrowings overdue', len(late))
        return borrowings

    def active_borrowing_for_user(self, user_id: int) -> Optional[Borrowing]:
        return (
            Borrowing.query.filter(Borrowing.user_id == user_id, Borrowing.status.in_(OUTSTANDING_STATUSES))
            .order_by(Borrowing.borrow_date.desc())
            .first()
        )

    def active_borrowing_for_bicycle(self, bicycle_id: int) -> Optional[Borrowing]:
        return Borrowing.query.filter(
            Borrowing.bicycle_id == bicycle_id, Borrowing.status.in_(OUTSTANDING_STATUSES)
        ).first()

    def list_for_user(self, user_id: int) -> List[Borrowing]:
        rows = Borrowing.query.filter_by(user_id=user_id).order_by(Borrowing.created_at.desc()).all()
        return self.refresh_overdue(rows)

    def list_borrowings(self, status: Optional[str] = None, search: Optional[str] = None) -> List[Borrowing]:
        self.refresh_overdue(Borrowing.query.filter_by(status='active').all())
        query = Borrowing.query.join(Bicycle, Borrowing.bicycle_id == Bicycle.id).join(
            User, Borrowing.user_id == User.id
        )
        if status and status != 'all':
            query = query.filter(Borrowing.status == status)
        term = (search or '').strip()
        if term:
            like_value = f"%{term}%"
            query = query.filter(
                or_(
                    Bicycle.name.ilike(like_value),
                    User.full_name.ilike(like_value),
                    User.email.ilike(like_value),
                    User.student_id.ilike(like_value),
                )
            )
        return query.order_by(Borrowing.created_at.desc(), Borrowing.id.desc()).all()

    def list_bicycles(self, availability: Optional[str] = None) -> List[Bicycle]:
        query = Bicycle.query
        if availability == 'available':
            query = query.filter(Bicycle.is_available.is_(True))
        elif availability == 'unavailable':
            query = query.filter(Bicycle.is_available.is_(False))
        return query.order_by(Bicycle.name).all()
