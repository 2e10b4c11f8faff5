import datetime
from datetime import timezone
from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy instance (initialized by app)
db = SQLAlchemy()

USER_ROLES = ('student', 'admin')
USER_STATUSES = ('active', 'suspended', 'pending')
CLEARANCE_STATUSES = ('approved', 'pending', 'rejected', 'none')
CERTIFICATE_STATUSES = ('pending', 'approved', 'rejected')
BORROWING_STATUSES = ('active', 'returned', 'overdue')
# statuses that hold a bicycle
OUTSTANDING_STATUSES = ('active', 'overdue')
PARTIAL_INDEX_DIALECTS = ('sqlite', 'postgresql')


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def _date_iso(value):
    return value.isoformat() if value else None


class TimestampMixin:
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class User(TimestampMixin, db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=True)
    full_name = db.Column(db.String(120), nullable=True)
    student_id = db.Column(db.String(40), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    department = db.Column(db.String(120), nullable=True)
    year = db.Column(db.String(20), nullable=True)
    role = db.Column(db.String(16), nullable=False, default='student')
    status = db.Column(db.String(16), nullable=False, default='active')
    medical_certificate_status = db.Column(db.String(16), nullable=False, default='none')

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'student_id': self.student_id,
            'phone': self.phone,
            'department': self.department,
            'year': self.year,
            'role': self.role,
            'status': self.status,
            'medical_certificate_status': self.medical_certificate_status,
            'created_at': _iso(self.created_at),
        }


class Bicycle(TimestampMixin, db.Model):
    __tablename__ = 'bicycles'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    type = db.Column(db.String(60), nullable=True)
    location = db.Column(db.String(120), nullable=True)
    # cached "no outstanding borrowing references this bicycle"
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    image_url = db.Column(db.String(500), nullable=True)
    last_maintenance = db.Column(db.Date, nullable=True)
    next_maintenance = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'location': self.location,
            'is_available': self.is_available,
            'image_url': self.image_url,
            'last_maintenance': _date_iso(self.last_maintenance),
            'next_maintenance': _date_iso(self.next_maintenance),
            'notes': self.notes,
        }


class Borrowing(TimestampMixin, db.Model):
    __tablename__ = 'borrowings'
    __table_args__ = (
        # at most one outstanding borrowing per bicycle. Skipped on dialects
        # without partial indexes, where the flag compare-and-swap in
        # BorrowService.reserve is the only guard.
        db.Index(
            'uq_borrowings_outstanding_bicycle',
            'bicycle_id',
            unique=True,
            sqlite_where=db.text("status IN ('active', 'overdue')"),
            postgresql_where=db.text("status IN ('active', 'overdue')"),
        ).ddl_if(dialect=PARTIAL_INDEX_DIALECTS),
    )
    id = db.Column(db.Integer, primary_key=True)
    bicycle_id = db.Column(db.Integer, db.ForeignKey('bicycles.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    borrow_date = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    expected_return_date = db.Column(db.DateTime(timezone=True), nullable=False)
    return_date = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(16), nullable=False, default='active')

    bicycle = db.relationship('Bicycle', backref=db.backref('borrowings', lazy=True))
    user = db.relationship('User', backref=db.backref('borrowings', lazy=True))

    def to_dict(self, status=None):
        return {
            'id': self.id,
            'bicycle_id': self.bicycle_id,
            'bicycle_name': self.bicycle.name if self.bicycle else None,
            'user_id': self.user_id,
            'user_name': self.user.full_name if self.user else None,
            'user_email': self.user.email if self.user else None,
            'borrow_date': _iso(self.borrow_date),
            'expected_return_date': _iso(self.expected_return_date),
            'return_date': _iso(self.return_date),
            'status': status or self.status,
        }


class MedicalCertificate(TimestampMixin, db.Model):
    __tablename__ = 'medical_certificates'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    file_name = db.Column(db.String(255), nullable=False)
    file_type = db.Column(db.String(120), nullable=False)
    file_url = db.Column(db.String(500), nullable=False)
    # blob store key, only set for files stored by this service
    file_path = db.Column(db.String(500), nullable=True)
    upload_date = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    status = db.Column(db.String(16), nullable=False, default='pending')
    notes = db.Column(db.Text, nullable=True)

    user = db.relationship('User', backref=db.backref('medical_certificates', lazy=True))

    def to_dict(self, include_user=False):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'file_name': self.file_name,
            'file_type': self.file_type,
            'file_url': self.file_url,
            'upload_date': _iso(self.upload_date),
            'status': self.status,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
        }
        if include_user:
            data['user'] = {
                'id': self.user.id,
                'full_name': self.user.full_name,
                'email': self.user.email,
                'student_id': self.user.student_id,
            } if self.user else None
        return data
