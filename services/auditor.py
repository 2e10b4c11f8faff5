"""Detection and repair of bicycle availability drift.

``Bicycle.is_available`` caches "no outstanding borrowing references this
bicycle". Out-of-band edits can still break that, so operators get three
tools: a cheap count comparison for the dashboard, a per-bicycle report, and
repairs that either fabricate the missing borrowing or let the operator pick
which side is correct.
"""
from __future__ import annotations

import datetime
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from flask import current_app

from models import OUTSTANDING_STATUSES, Bicycle, Borrowing, User, db, utcnow
from services.errors import NotFoundError, ServiceError, ValidationError
from services.transaction import transaction

TRUST_CHOICES = ('records', 'flag')


@dataclass(frozen=True)
class DataConsistencyIssue:
    unavailable_bicycles: int
    active_borrowings: int
    message: str = 'Data inconsistency detected'

    @property
    def details(self) -> str:
        return (
            f'{self.unavailable_bicycles} bicycles are marked as unavailable, '
            f'but there are {self.active_borrowings} active borrowings.'
        )

    @property
    def mismatch(self) -> int:
        return abs(self.unavailable_bicycles - self.active_borrowings)

    def to_dict(self):
        return {
            'message': self.message,
            'details': self.details,
            'unavailable_bicycles': self.unavailable_bicycles,
            'active_borrowings': self.active_borrowings,
            'mismatch': self.mismatch,
        }


@dataclass
class ReconciliationReport:
    # flagged unavailable with no outstanding borrowing
    orphan_bicycles: List[dict] = field(default_factory=list)
    # flagged available while an outstanding borrowing exists
    stale_flags: List[dict] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.orphan_bicycles and not self.stale_flags

    def to_dict(self):
        return {
            'consistent': self.consistent,
            'orphan_bicycles': self.orphan_bicycles,
            'stale_flags': self.stale_flags,
        }


@dataclass
class RepairOutcome:
    bicycle_id: int
    status: str
    message: str
    borrowing_id: Optional[int] = None


class ConsistencyAuditor:
    def detect(self) -> Optional[DataConsistencyIssue]:
        unavailable = Bicycle.query.filter(Bicycle.is_available.is_(False)).count()
        outstanding = Borrowing.query.filter(Borrowing.status.in_(OUTSTANDING_STATUSES)).count()
        if unavailable == outstanding:
            return None
        issue = DataConsistencyIssue(unavailable_bicycles=unavailable, active_borrowings=outstanding)
        current_app.logger.warning('Data inconsistency detected: %s', issue.details)
        return issue

    def report(self) -> ReconciliationReport:
        report = ReconciliationReport()
        outstanding = {}
        for borrowing in Borrowing.query.filter(Borrowing.status.in_(OUTSTANDING_STATUSES)).all():
            outstanding.setdefault(borrowing.bicycle_id, []).append(borrowing.id)
        for bicycle in Bicycle.query.order_by(Bicycle.id).all():
            borrowing_ids = outstanding.get(bicycle.id, [])
            if not bicycle.is_available and not borrowing_ids:
                report.orphan_bicycles.append({'bicycle_id': bicycle.id, 'name': bicycle.name})
            elif bicycle.is_available and borrowing_ids:
                report.stale_flags.append(
                    {'bicycle_id': bicycle.id, 'name': bicycle.name, 'borrowing_ids': borrowing_ids}
                )
        return report

    def _fabricate_borrowing(self, bicycle: Bicycle, now: datetime.datetime) -> RepairOutcome:
        existing = Borrowing.query.filter(
            Borrowing.bicycle_id == bicycle.id, Borrowing.status.in_(OUTSTANDING_STATUSES)
        ).first()
        if existing is not None:
            return RepairOutcome(bicycle.id, 'ok', 'Borrowing record exists', existing.id)
        user = User.query.order_by(User.id).first()
        if not user:
            return RepairOutcome(bicycle.id, 'error', 'No users found to create borrowing')
        days = current_app.config['ORPHAN_REPAIR_RETURN_DAYS']
        with transaction('Error creating borrowing', conflict_message='Borrowing created concurrently'):
            borrowing = Borrowing(
                bicycle_id=bicycle.id,
                user_id=user.id,
                borrow_date=now,
                expected_return_date=now + datetime.timedelta(days=days),
                status='active',
            )
            db.session.add(borrowing)
            db.session.flush()
        current_app.logger.warning(
            'Fabricated borrowing %s for orphan bicycle %s (user %s)', borrowing.id, bicycle.id, user.id
        )
        return RepairOutcome(bicycle.id, 'fixed', 'Created missing borrowing record', borrowing.id)

    def repair_orphans(self, now: Optional[datetime.datetime] = None) -> List[RepairOutcome]:
        """Create a synthetic borrowing for every orphan bicycle.

        The borrower is simply the first user on file. This invents history
        rather than finding out whether the flag or the records are wrong;
        ``reconcile`` is the alternative that asks.
        """
        now = now or utcnow()
        outcomes = []
        for bicycle in Bicycle.query.filter(Bicycle.is_available.is_(False)).order_by(Bicycle.id).all():
            try:
                outcomes.append(self._fabricate_borrowing(bicycle, now))
            except ServiceError as exc:
                outcomes.append(RepairOutcome(bicycle.id, 'error', f'Error creating borrowing: {exc.message}'))
        current_app.logger.info(
            'Orphan repair finished: %d checked, %d fixed',
            len(outcomes),
            sum(1 for o in outcomes if o.status == 'fixed'),
        )
        return outcomes

    def reconcile(self, bicycle_id: int, trust: str, now: Optional[datetime.datetime] = None) -> dict:
        if trust not in TRUST_CHOICES:
            raise ValidationError(f'trust must be one of {", ".join(TRUST_CHOICES)}')
        now = now or utcnow()
        bicycle = db.session.get(Bicycle, bicycle_id)
        if not bicycle:
            raise NotFoundError('Bicycle not found')
        outstanding = Borrowing.query.filter(
            Borrowing.bicycle_id == bicycle.id, Borrowing.status.in_(OUTSTANDING_STATUSES)
        ).all()

        if trust == 'records':
            with transaction('Failed to reconcile bicycle'):
                bicycle.is_available = not outstanding
            action = 'flag_set_unavailable' if outstanding else 'flag_set_available'
            current_app.logger.info('Bicycle %s flag rewritten from records (%s)', bicycle.id, action)
            return {'bicycle_id': bicycle.id, 'action': action, 'is_available': bicycle.is_available}

        if not bicycle.is_available:
            outcome = self._fabricate_borrowing(bicycle, now)
            action = 'borrowing_created' if outcome.status == 'fixed' else 'unchanged'
            return {'action': action, **asdict(outcome)}

        with transaction('Failed to reconcile bicycle'):
            for borrowing in outstanding:
                borrowing.status = 'returned'
                borrowing.return_date = now
        current_app.logger.info('Closed %d dangling borrowings for bicycle %s', len(outstanding), bicycle.id)
        return {
            'bicycle_id': bicycle.id,
            'action': 'borrowings_closed',
            'borrowing_ids': [b.id for b in outstanding],
        }
