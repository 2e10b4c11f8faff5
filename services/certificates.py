"""Medical certificate clearance logic."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.datastructures import FileStorage

from models import CERTIFICATE_STATUSES, MedicalCertificate, User, db
from services.errors import Forbidden, NotFoundError, PersistenceError, ValidationError
from services.storage import CertificateStorage
from services.transaction import transaction

DECISIONS = ('approved', 'rejected')


@dataclass
class ResyncResult:
    processed: int = 0
    updates: List[dict] = field(default_factory=list)

    def to_dict(self):
        return {
            'success': True,
            'message': f'Synced medical certificate status for {len(self.updates)} users',
            'processed': self.processed,
            'updates': self.updates,
        }


def _latest_certificate_status(user_id: int) -> str:
    latest = (
        MedicalCertificate.query.filter_by(user_id=user_id)
        .order_by(MedicalCertificate.created_at.desc(), MedicalCertificate.id.desc())
        .first()
    )
    return latest.status if latest else 'none'


class CertificateService:
    """Keeps ``User.medical_certificate_status`` in step with certificate history.

    The user's status is only ever written inside the same transaction as the
    certificate write that changed it.
    """

    def __init__(self, storage: Optional[CertificateStorage] = None):
        self.storage = storage or CertificateStorage()

    def resolve_status(self, user_id: int) -> str:
        try:
            return _latest_certificate_status(user_id)
        except SQLAlchemyError as exc:
            current_app.logger.exception('Resolving clearance for user %s failed', user_id)
            db.session.rollback()
            raise PersistenceError('Failed to resolve medical certificate status') from exc

    def decide(self, certificate_id: int, decision: str, notes: Optional[str] = None) -> MedicalCertificate:
        if decision not in DECISIONS:
            raise ValidationError(f'Invalid decision: {decision!r}')
        with transaction('Failed to update certificate'):
            certificate = db.session.get(MedicalCertificate, certificate_id)
            if not certificate:
                raise NotFoundError('Certificate not found')
            certificate.status = decision
            certificate.notes = notes or None
            db.session.flush()
            owner = db.session.get(User, certificate.user_id)
            if owner:
                # an older certificate's decision never overrides a newer upload
                owner.medical_certificate_status = _latest_certificate_status(owner.id)
        current_app.logger.info('Certificate %s %s', certificate_id, decision)
        return certificate

    def bulk_resync(self, user_id: Optional[int] = None) -> ResyncResult:
        result = ResyncResult()
        with transaction('Failed to sync medical certificate status'):
            query = User.query.order_by(User.id)
            if user_id is not None:
                query = query.filter(User.id == user_id)
            users = query.all()
            if user_id is not None and not users:
                raise NotFoundError('User not found')
            for user in users:
                result.processed += 1
                latest = _latest_certificate_status(user.id)
                if user.medical_certificate_status != latest:
                    current_app.logger.info(
                        'User %s medical status %s -> %s', user.id, user.medical_certificate_status, latest
                    )
                    user.medical_certificate_status = latest
                    result.updates.append({'id': user.id, 'status': latest})
        return result

    def record_upload(self, user: User, file: FileStorage) -> MedicalCertificate:
        path, url = self.storage.upload(user.id, file)
        try:
            with transaction('Failed to create certificate record'):
                certificate = MedicalCertificate(
                    user_id=user.id,
                    file_name=file.filename,
                    file_type=file.mimetype or 'application/octet-stream',
                    file_url=url,
                    file_path=path,
                    status='pending',
                )
                db.session.add(certificate)
                db.session.get(User, user.id).medical_certificate_status = 'pending'
        except PersistenceError:
            self.storage.remove(path)
            raise
        current_app.logger.info('User %s uploaded certificate %s', user.id, certificate.id)
        return certificate

    def register_uploaded(
        self,
        acting_user: User,
        *,
        file_name: Optional[str],
        file_type: Optional[str],
        file_url: Optional[str],
        notes: Optional[str] = None,
        status: Optional[str] = None,
        on_behalf_of: Optional[int] = None,
    ) -> MedicalCertificate:
        if not file_name or not file_type or not file_url:
            raise ValidationError('Missing required fields')
        owner_id = on_behalf_of or acting_user.id
        if owner_id != acting_user.id and not acting_user.is_admin:
            raise Forbidden('Unauthorized to upload for other users')
        status = status or 'pending'
        if status not in CERTIFICATE_STATUSES or (status != 'pending' and not acting_user.is_admin):
            raise ValidationError(f'Invalid certificate status: {status!r}')
        with transaction('Failed to create certificate'):
            owner = db.session.get(User, owner_id)
            if not owner:
                raise NotFoundError('User not found')
            certificate = MedicalCertificate(
                user_id=owner.id,
                file_name=file_name,
                file_type=file_type,
                file_url=file_url,
                status=status,
                notes=notes or None,
            )
            db.session.add(certificate)
            owner.medical_certificate_status = status
        return certificate

    def list_for_user(self, user_id: int) -> List[MedicalCertificate]:
        return (
            MedicalCertificate.query.filter_by(user_id=user_id)
            .order_by(MedicalCertificate.created_at.desc(), MedicalCertificate.id.desc())
            .all()
        )

    def list_all(self, status: Optional[str] = None, search: Optional[str] = None) -> List[MedicalCertificate]:
        query = MedicalCertificate.query.join(User, MedicalCertificate.user_id == User.id)
        if status and status != 'all':
            query = query.filter(MedicalCertificate.status == status)
        term = (search or '').strip()
        if term:
            like_value = f"%{term}%"
            query = query.filter(
                or_(
                    MedicalCertificate.file_name.ilike(like_value),
                    User.full_name.ilike(like_value),
                    User.email.ilike(like_value),
                    User.student_id.ilike(like_value),
                )
            )
        return query.order_by(MedicalCertificate.created_at.desc(), MedicalCertificate.id.desc()).all()
