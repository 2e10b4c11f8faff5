from __future__ import annotations

import csv
import datetime
import io
import logging
import os

from flask import (
    Flask,
    g,
    jsonify,
    request,
    send_from_directory,
)
from flask_wtf import CSRFProtect
from flask_wtf.csrf import CSRFError, generate_csrf
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from config import BaseConfig, config_by_name
from models import (
    OUTSTANDING_STATUSES,
    USER_ROLES,
    USER_STATUSES,
    Bicycle,
    Borrowing,
    MedicalCertificate,
    User,
    db,
)
from services.auditor import ConsistencyAuditor
from services.auth import (
    admin_required,
    authenticate,
    get_current_user,
    login_required,
    login_user,
    logout_user,
    provision_user,
)
from services.borrowing import BorrowService, recompute_overdue
from services.certificates import CertificateService
from services.errors import (
    ConflictError,
    Forbidden,
    NotFoundError,
    PersistenceError,
    ServiceError,
    ValidationError,
)
from services.storage import BicycleImageStorage
from services.transaction import transaction

csrf = CSRFProtect()

BICYCLE_FIELDS = ('name', 'type', 'location', 'image_url', 'notes')
BICYCLE_DATE_FIELDS = ('last_maintenance', 'next_maintenance')
PROFILE_FIELDS = ('full_name', 'phone', 'department', 'year')
ADMIN_USER_FIELDS = PROFILE_FIELDS + ('student_id', 'role', 'status')


def _load_config(app: Flask, config_name: str | None, test_config: dict | None) -> None:
    resolved_name = config_name or os.environ.get('FLASK_CONFIG', 'development')
    config_cls = config_by_name.get(resolved_name, BaseConfig)
    app.config.from_object(config_cls)
    if test_config:
        app.config.update(test_config)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _parse_int(value, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer') from None


def _parse_date(value, field: str):
    if value in (None, ''):
        return None
    try:
        return datetime.date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f'{field} must be a date (YYYY-MM-DD)') from None


def _parse_text(value, field: str):
    if value is None:
        return None
    # numbers are fine for fields like phone or year; lists and objects are not
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValidationError(f'{field} must be a string')
    return str(value).strip() or None


def _parse_bool(value, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ('true', '1', 'yes', 'on'):
            return True
        if lowered in ('false', '0', 'no', 'off'):
            return False
    raise ValidationError(f'{field} must be true or false')


def _apply_text_fields(obj, data: dict, fields) -> None:
    for name in fields:
        if name in data:
            setattr(obj, name, _parse_text(data[name], name))


def _apply_bicycle_fields(bicycle: Bicycle, data: dict) -> None:
    _apply_text_fields(bicycle, data, BICYCLE_FIELDS)
    for name in BICYCLE_DATE_FIELDS:
        if name in data:
            setattr(bicycle, name, _parse_date(data[name], name))
    # admins may override the flag; drift shows up in the consistency report
    if 'is_available' in data:
        bicycle.is_available = _parse_bool(data['is_available'], 'is_available')
    if not bicycle.name:
        raise ValidationError('Bicycle name is required')


def _borrowings_csv(rows) -> str:
    si = io.StringIO()
    cw = csv.writer(si)
    cw.writerow(['id', 'bicycle', 'user_email', 'student_id', 'borrow_date', 'expected_return_date', 'return_date', 'status'])
    for r in rows:
        cw.writerow([
            r.id,
            r.bicycle.name if r.bicycle else '',
            r.user.email if r.user else '',
            (r.user.student_id or '') if r.user else '',
            r.borrow_date,
            r.expected_return_date,
            r.return_date or '',
            recompute_overdue(r),
        ])
    return si.getvalue()


def create_app(config_name: str | None = None, test_config: dict | None = None):
    if isinstance(config_name, dict) and test_config is None:
        test_config = config_name
        config_name = None
    app = Flask(__name__)
    _load_config(app, config_name, test_config)
    app.logger.setLevel(getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO))
    db.init_app(app)
    csrf.init_app(app)
    certificate_service = CertificateService()
    borrow_service = BorrowService(certificates=certificate_service)
    auditor = ConsistencyAuditor()
    image_storage = BicycleImageStorage()

    @app.errorhandler(ServiceError)
    def handle_service_error(exc: ServiceError):
        if exc.status_code >= 500:
            app.logger.error('%s on %s %s: %s', exc.code, request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_store_error(exc: SQLAlchemyError):
        db.session.rollback()
        app.logger.exception('Store failure on %s %s', request.method, request.path)
        return jsonify(PersistenceError('A database error occurred. Please try again later.').to_dict()), 500

    @app.errorhandler(CSRFError)
    def handle_csrf_error(exc: CSRFError):
        return jsonify({'error': exc.description, 'code': 'CSRFError'}), 400

    @app.before_request
    def bind_current_user():
        g.current_user = get_current_user()

    @app.after_request
    def set_security_headers(response):
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('Referrer-Policy', 'no-referrer-when-downgrade')
        response.headers.setdefault('Cache-Control', 'no-store, max-age=0')
        return response

    @app.route('/api/csrf-token', methods=['GET'])
    def csrf_token():
        return jsonify({'csrf_token': generate_csrf()})

    # -- identity -------------------------------------------------------

    @app.route('/api/auth/register', methods=['POST'])
    def register():
        data = _json_body()
        user, warnings = provision_user(data.get('email'), data.get('password'), data.get('full_name'))
        login_user(user)
        return jsonify({'user': user.to_dict(), 'warnings': warnings}), 201

    @app.route('/api/auth/login', methods=['POST'])
    def login():
        data = _json_body()
        user = authenticate(data.get('email'), data.get('password'))
        login_user(user)
        app.logger.info('User %s logged in', user.id)
        return jsonify({'user': user.to_dict()})

    @app.route('/api/auth/logout', methods=['POST'])
    def logout():
        logout_user()
        return jsonify({'success': True})

    @app.route('/api/auth/user', methods=['GET'])
    @login_required
    def current_user_profile():
        user = g.current_user
        active = borrow_service.active_borrowing_for_user(user.id)
        return jsonify({
            'user': user.to_dict(),
            'active_borrowing': active.to_dict(status=recompute_overdue(active)) if active else None,
        })

    @app.route('/api/users/me', methods=['PATCH'])
    @login_required
    def update_own_profile():
        data = _json_body()
        user = g.current_user
        with transaction('Failed to update user'):
            _apply_text_fields(user, data, PROFILE_FIELDS)
        return jsonify(user.to_dict())

    # -- bicycles -------------------------------------------------------

    @app.route('/api/bicycles', methods=['GET'])
    def list_bicycles():
        availability = request.args.get('filter')
        return jsonify([b.to_dict() for b in borrow_service.list_bicycles(availability)])

    @app.route('/api/bicycles', methods=['POST'])
    @admin_required
    def create_bicycle():
        data = _json_body()
        bicycle = Bicycle(is_available=True)
        _apply_bicycle_fields(bicycle, data)
        with transaction('Failed to create bicycle'):
            db.session.add(bicycle)
        app.logger.info('Added bicycle %s (%s)', bicycle.id, bicycle.name)
        return jsonify(bicycle.to_dict()), 201

    @app.route('/api/bicycles/<int:bicycle_id>', methods=['PUT'])
    @admin_required
    def update_bicycle(bicycle_id: int):
        data = _json_body()
        bicycle = db.session.get(Bicycle, bicycle_id)
        if not bicycle:
            raise NotFoundError('Bicycle not found')
        with transaction('Failed to update bicycle'):
            _apply_bicycle_fields(bicycle, data)
        return jsonify(bicycle.to_dict())

    @app.route('/api/bicycles/<int:bicycle_id>/image', methods=['POST'])
    @admin_required
    def upload_bicycle_image(bicycle_id: int):
        bicycle = db.session.get(Bicycle, bicycle_id)
        if not bicycle:
            raise NotFoundError('Bicycle not found')
        path, url = image_storage.upload(request.files.get('file'))
        try:
            with transaction('Failed to update bicycle image'):
                bicycle.image_url = url
        except ServiceError:
            image_storage.remove(path)
            raise
        app.logger.info('Bicycle %s image set to %s', bicycle.id, path)
        return jsonify({
            'success': True,
            'message': 'File uploaded successfully',
            'url': url,
            'bicycle': bicycle.to_dict(),
        })

    @app.route('/files/bicycle-images/<path:path>', methods=['GET'])
    def bicycle_image_file(path: str):
        return send_from_directory(app.config['BICYCLE_IMAGE_FOLDER'], path)

    @app.route('/api/bicycles/<int:bicycle_id>', methods=['DELETE'])
    @admin_required
    def delete_bicycle(bicycle_id: int):
        bicycle = db.session.get(Bicycle, bicycle_id)
        if not bicycle:
            raise NotFoundError('Bicycle not found')
        if borrow_service.active_borrowing_for_bicycle(bicycle.id):
            raise ConflictError('Bicycle has an outstanding borrowing and cannot be deleted')
        if Borrowing.query.filter_by(bicycle_id=bicycle.id).count():
            raise ConflictError('Bicycle has borrowing history and cannot be deleted')
        with transaction('Failed to delete bicycle'):
            db.session.delete(bicycle)
        app.logger.info('Deleted bicycle %s', bicycle_id)
        return jsonify({'success': True})

    # -- borrowings -----------------------------------------------------

    @app.route('/api/borrowings', methods=['POST'])
    @login_required
    def reserve_bicycle():
        data = _json_body()
        bicycle_id = _parse_int(data.get('bicycle_id'), 'bicycle_id')
        result = borrow_service.reserve(
            user_id=g.current_user.id,
            bicycle_id=bicycle_id,
            duration_hours=data.get('duration_hours'),
        )
        return jsonify(result.borrowing.to_dict()), 201

    @app.route('/api/borrowings/mine', methods=['GET'])
    @login_required
    def my_borrowings():
        rows = borrow_service.list_for_user(g.current_user.id)
        return jsonify({'borrowings': [b.to_dict() for b in rows]})

    @app.route('/api/borrowings/<int:borrowing_id>/return', methods=['POST'])
    @login_required
    def return_bicycle(borrowing_id: int):
        result = borrow_service.mark_returned(borrowing_id=borrowing_id, acting_user=g.current_user)
        return jsonify(result.borrowing.to_dict())

    # -- medical certificates -------------------------------------------

    @app.route('/api/medical-certificates/upload', methods=['POST'])
    @login_required
    def upload_certificate():
        certificate = certificate_service.record_upload(g.current_user, request.files.get('file'))
        return jsonify({
            'success': True,
            'message': 'Certificate uploaded successfully',
            'url': certificate.file_url,
            'certificate': certificate.to_dict(),
        }), 201

    @app.route('/api/medical-certificates', methods=['POST'])
    @login_required
    def register_certificate():
        data = _json_body()
        on_behalf_of = _parse_int(data['user_id'], 'user_id') if data.get('user_id') else None
        certificate = certificate_service.register_uploaded(
            g.current_user,
            file_name=data.get('file_name'),
            file_type=data.get('file_type'),
            file_url=data.get('file_url'),
            notes=data.get('notes'),
            status=data.get('status'),
            on_behalf_of=on_behalf_of,
        )
        return jsonify(certificate.to_dict()), 201

    @app.route('/api/medical-certificates/mine', methods=['GET'])
    @login_required
    def my_certificates():
        user = g.current_user
        return jsonify({
            'status': user.medical_certificate_status,
            'certificates': [c.to_dict() for c in certificate_service.list_for_user(user.id)],
        })

    @app.route('/files/certificates/<path:path>', methods=['GET'])
    @login_required
    def certificate_file(path: str):
        user = g.current_user
        owner = path.split('/', 1)[0]
        if not user.is_admin and owner != str(user.id):
            raise Forbidden('You can only view your own certificates')
        return send_from_directory(app.config['CERTIFICATE_UPLOAD_FOLDER'], path)

    # -- admin ----------------------------------------------------------

    @app.route('/api/admin/dashboard', methods=['GET'])
    @admin_required
    def admin_dashboard():
        issue = auditor.detect()
        stats = {
            'totalBicycles': Bicycle.query.count(),
            'availableBicycles': Bicycle.query.filter(Bicycle.is_available.is_(True)).count(),
            'activeBorrowings': Borrowing.query.filter(Borrowing.status.in_(OUTSTANDING_STATUSES)).count(),
            'pendingCertificates': MedicalCertificate.query.filter_by(status='pending').count(),
            'totalUsers': User.query.count(),
        }
        return jsonify({'stats': stats, 'dataConsistencyIssue': issue.to_dict() if issue else None})

    @app.route('/api/admin/users', methods=['GET'])
    @admin_required
    def admin_users():
        q = (request.args.get('q') or '').strip()
        status = request.args.get('status')
        query = User.query
        if q:
            like_value = f"%{q}%"
            query = query.filter(
                or_(User.email.ilike(like_value), User.full_name.ilike(like_value), User.student_id.ilike(like_value))
            )
        if status and status != 'all':
            query = query.filter(User.status == status)
        users = []
        for user in query.order_by(User.full_name, User.id).all():
            data = user.to_dict()
            data['active_borrowings'] = Borrowing.query.filter(
                Borrowing.user_id == user.id, Borrowing.status.in_(OUTSTANDING_STATUSES)
            ).count()
            users.append(data)
        return jsonify({'users': users})

    @app.route('/api/admin/users/<int:user_id>', methods=['PATCH'])
    @admin_required
    def admin_edit_user(user_id: int):
        data = _json_body()
        user = db.session.get(User, user_id)
        if not user:
            raise NotFoundError('User not found')
        if 'role' in data and data['role'] not in USER_ROLES:
            raise ValidationError(f"Invalid role: {data['role']!r}")
        if 'status' in data and data['status'] not in USER_STATUSES:
            raise ValidationError(f"Invalid status: {data['status']!r}")
        with transaction('Failed to update user'):
            _apply_text_fields(user, data, ADMIN_USER_FIELDS)
        app.logger.info('Admin %s updated user %s', g.current_user.id, user.id)
        return jsonify(user.to_dict())

    @app.route('/api/admin/borrowings', methods=['GET'])
    @admin_required
    def admin_borrowings():
        rows = borrow_service.list_borrowings(request.args.get('status'), request.args.get('search'))
        return jsonify({'borrowings': [b.to_dict() for b in rows]})

    @app.route('/api/admin/borrowings/export', methods=['GET'])
    @admin_required
    def export_borrowings():
        rows = borrow_service.list_borrowings(request.args.get('status'), request.args.get('search'))
        return app.response_class(
            _borrowings_csv(rows),
            mimetype='text/csv',
            headers={'Content-Disposition': 'attachment;filename=borrowings.csv'},
        )

    @app.route('/api/admin/medical-certificates', methods=['GET'])
    @admin_required
    def admin_certificates():
        rows = certificate_service.list_all(request.args.get('status'), request.args.get('search'))
        return jsonify({'certificates': [c.to_dict(include_user=True) for c in rows]})

    @app.route('/api/admin/medical-certificates', methods=['PATCH'])
    @admin_required
    def admin_decide_certificate():
        data = _json_body()
        if not data.get('id') or not data.get('status'):
            raise ValidationError('Missing required fields')
        certificate = certificate_service.decide(
            _parse_int(data['id'], 'id'), data['status'], data.get('notes')
        )
        return jsonify({
            'success': True,
            'certificate': certificate.to_dict(),
            'message': f"Certificate {certificate.status} successfully",
        })

    @app.route('/api/admin/sync-medical-status', methods=['POST'])
    @admin_required
    def admin_sync_medical_status():
        data = _json_body()
        user_id = _parse_int(data['user_id'], 'user_id') if data.get('user_id') else None
        return jsonify(certificate_service.bulk_resync(user_id).to_dict())

    @app.route('/api/admin/fix-data-inconsistency', methods=['POST'])
    @admin_required
    def admin_fix_data_inconsistency():
        outcomes = auditor.repair_orphans()
        if not outcomes:
            return jsonify({'message': 'No unavailable bicycles found', 'bicycles_checked': 0, 'results': []})
        return jsonify({
            'message': 'Data consistency check completed',
            'bicycles_checked': len(outcomes),
            'results': [vars(o) for o in outcomes],
        })

    @app.route('/api/admin/consistency-report', methods=['GET'])
    @admin_required
    def admin_consistency_report():
        issue = auditor.detect()
        return jsonify({
            'dataConsistencyIssue': issue.to_dict() if issue else None,
            'report': auditor.report().to_dict(),
        })

    @app.route('/api/admin/reconcile', methods=['POST'])
    @admin_required
    def admin_reconcile():
        data = _json_body()
        bicycle_id = _parse_int(data.get('bicycle_id'), 'bicycle_id')
        return jsonify(auditor.reconcile(bicycle_id, data.get('trust')))

    return app


if __name__ == '__main__':
    application = create_app()
    with application.app_context():
        db.create_all()
    application.run(debug=True)
