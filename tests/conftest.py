import datetime

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from models import Bicycle, Borrowing, MedicalCertificate, User, db, utcnow


@pytest.fixture
def app(tmp_path):
    app = create_app('testing', {
        'CERTIFICATE_UPLOAD_FOLDER': str(tmp_path / 'certificates'),
        'BICYCLE_IMAGE_FOLDER': str(tmp_path / 'bicycle-images'),
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {'n': 0}

    def _make_user(role='student', clearance=None, status='active', password='secret', email=None):
        counter['n'] += 1
        user = User(
            email=email or f"21-{counter['n']:05d}@g.batstate-u.edu.ph",
            password_hash=generate_password_hash(password),
            full_name=f"Student {counter['n']}",
            student_id=f"21-{counter['n']:05d}",
            role=role,
            status=status,
        )
        db.session.add(user)
        db.session.commit()
        if clearance:
            add_certificate(user, clearance)
        return user

    return _make_user


def add_certificate(user, status, created_at=None, file_name='cert.pdf'):
    certificate = MedicalCertificate(
        user_id=user.id,
        file_name=file_name,
        file_type='application/pdf',
        file_url=f'https://files.example/{file_name}',
        status=status,
        created_at=created_at or utcnow(),
    )
    db.session.add(certificate)
    db.session.flush()
    latest = (
        MedicalCertificate.query.filter_by(user_id=user.id)
        .order_by(MedicalCertificate.created_at.desc(), MedicalCertificate.id.desc())
        .first()
    )
    user.medical_certificate_status = latest.status
    db.session.commit()
    return certificate


def add_bicycle(name='Trek FX 1', is_available=True, **fields):
    bicycle = Bicycle(name=name, type='hybrid', location='Gym', is_available=is_available, **fields)
    db.session.add(bicycle)
    db.session.commit()
    return bicycle


def add_borrowing(user, bicycle, status='active', hours=24, borrow_date=None):
    borrow_date = borrow_date or utcnow()
    borrowing = Borrowing(
        user_id=user.id,
        bicycle_id=bicycle.id,
        borrow_date=borrow_date,
        expected_return_date=borrow_date + datetime.timedelta(hours=hours),
        status=status,
    )
    db.session.add(borrowing)
    db.session.commit()
    return borrowing


def login(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user.id
        sess['role'] = user.role
