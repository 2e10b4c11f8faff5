import datetime
import io

import pytest
from werkzeug.datastructures import FileStorage

from conftest import add_certificate
from models import MedicalCertificate, User, db, utcnow
from services.certificates import CertificateService
from services.errors import Forbidden, NotFoundError, PersistenceError, ValidationError


@pytest.fixture
def service(app):
    return CertificateService()


def _pdf(name='clearance.pdf'):
    return FileStorage(stream=io.BytesIO(b'%PDF-1.4 test'), filename=name, content_type='application/pdf')


def test_resolve_status_without_certificates(service, make_user):
    assert service.resolve_status(make_user().id) == 'none'


def test_resolve_status_uses_latest_created_at_not_insertion_order(service, make_user):
    user = make_user()
    base = utcnow()
    add_certificate(user, 'rejected', created_at=base - datetime.timedelta(days=1))
    add_certificate(user, 'approved', created_at=base)
    add_certificate(user, 'pending', created_at=base - datetime.timedelta(days=5))
    assert service.resolve_status(user.id) == 'approved'


def test_resolve_status_breaks_created_at_ties_by_id(service, make_user):
    user = make_user()
    stamp = utcnow()
    add_certificate(user, 'approved', created_at=stamp)
    add_certificate(user, 'rejected', created_at=stamp)
    assert service.resolve_status(user.id) == 'rejected'


def test_decide_updates_certificate_and_owner(service, make_user):
    user = make_user()
    certificate = add_certificate(user, 'pending')

    service.decide(certificate.id, 'approved', notes='Looks fine')

    certificate = db.session.get(MedicalCertificate, certificate.id)
    assert certificate.status == 'approved'
    assert certificate.notes == 'Looks fine'
    assert db.session.get(User, user.id).medical_certificate_status == 'approved'


def test_decision_on_older_certificate_does_not_override_newer(service, make_user):
    user = make_user()
    older = add_certificate(user, 'rejected', created_at=utcnow() - datetime.timedelta(days=3))
    add_certificate(user, 'rejected')

    service.decide(older.id, 'approved')

    assert db.session.get(MedicalCertificate, older.id).status == 'approved'
    assert db.session.get(User, user.id).medical_certificate_status == 'rejected'


@pytest.mark.parametrize('decision', ['pending', 'maybe', ''])
def test_decide_rejects_invalid_decision(service, make_user, decision):
    certificate = add_certificate(make_user(), 'pending')
    with pytest.raises(ValidationError):
        service.decide(certificate.id, decision)


def test_decide_unknown_certificate(service):
    with pytest.raises(NotFoundError):
        service.decide(404, 'approved')


def test_bulk_resync_repairs_drift_for_all_users(service, make_user):
    drifted = make_user()
    add_certificate(drifted, 'approved')
    drifted.medical_certificate_status = 'pending'
    orphaned = make_user()
    orphaned.medical_certificate_status = 'approved'
    in_sync = make_user(clearance='rejected')
    db.session.commit()

    result = service.bulk_resync()

    assert result.processed == 3
    assert sorted(result.updates, key=lambda u: u['id']) == [
        {'id': drifted.id, 'status': 'approved'},
        {'id': orphaned.id, 'status': 'none'},
    ]
    assert db.session.get(User, in_sync.id).medical_certificate_status == 'rejected'


def test_bulk_resync_single_user(service, make_user):
    target = make_user()
    add_certificate(target, 'approved')
    target.medical_certificate_status = 'none'
    bystander = make_user()
    bystander.medical_certificate_status = 'approved'
    db.session.commit()

    result = service.bulk_resync(target.id)

    assert result.processed == 1
    assert db.session.get(User, target.id).medical_certificate_status == 'approved'
    assert db.session.get(User, bystander.id).medical_certificate_status == 'approved'


def test_bulk_resync_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.bulk_resync(987)


def test_record_upload_stores_file_and_marks_pending(app, service, make_user):
    user = make_user(clearance='approved')

    with app.test_request_context():
        certificate = service.record_upload(user, _pdf())

    assert certificate.status == 'pending'
    assert certificate.file_name == 'clearance.pdf'
    assert certificate.file_path.startswith(f'{user.id}/')
    assert certificate.file_url.endswith(certificate.file_path)
    stored = app.config['CERTIFICATE_UPLOAD_FOLDER'] + '/' + certificate.file_path
    with open(stored, 'rb') as fh:
        assert fh.read().startswith(b'%PDF')
    assert db.session.get(User, user.id).medical_certificate_status == 'pending'


def test_record_upload_rejects_disallowed_type(app, service, make_user):
    user = make_user()
    with app.test_request_context():
        with pytest.raises(ValidationError):
            service.record_upload(user, _pdf('payload.exe'))
        with pytest.raises(ValidationError):
            service.record_upload(user, None)
    assert MedicalCertificate.query.count() == 0


def test_record_upload_removes_blob_when_insert_fails(app, service, make_user, monkeypatch):
    user = make_user()
    removed = []
    monkeypatch.setattr(service.storage, 'remove', removed.append)

    def fail_commit():
        from sqlalchemy.exc import OperationalError
        raise OperationalError('INSERT', {}, Exception('disk full'))

    monkeypatch.setattr(db.session, 'commit', fail_commit)
    with app.test_request_context():
        with pytest.raises(PersistenceError):
            service.record_upload(user, _pdf())
    assert len(removed) == 1


def test_register_uploaded_requires_fields(service, make_user):
    with pytest.raises(ValidationError):
        service.register_uploaded(make_user(), file_name='x.pdf', file_type=None, file_url='https://f/x.pdf')


def test_register_uploaded_for_someone_else_needs_admin(service, make_user):
    student = make_user()
    other = make_user()
    admin = make_user(role='admin')
    fields = dict(file_name='x.pdf', file_type='application/pdf', file_url='https://f/x.pdf')

    with pytest.raises(Forbidden):
        service.register_uploaded(student, on_behalf_of=other.id, **fields)

    certificate = service.register_uploaded(admin, on_behalf_of=other.id, status='approved', **fields)
    assert certificate.user_id == other.id
    assert db.session.get(User, other.id).medical_certificate_status == 'approved'


def test_students_cannot_self_approve(service, make_user):
    with pytest.raises(ValidationError):
        service.register_uploaded(
            make_user(), file_name='x.pdf', file_type='application/pdf', file_url='https://f/x.pdf', status='approved'
        )


def test_list_all_filters_and_searches(service, make_user):
    alice = make_user()
    alice.full_name = 'Alice Santos'
    bob = make_user()
    db.session.commit()
    add_certificate(alice, 'pending', file_name='alice.pdf')
    add_certificate(bob, 'approved', file_name='bob.pdf')

    assert [c.file_name for c in service.list_all(status='pending')] == ['alice.pdf']
    assert [c.file_name for c in service.list_all(search='santos')] == ['alice.pdf']
    assert len(service.list_all(status='all')) == 2
