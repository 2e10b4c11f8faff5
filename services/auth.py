"""Authentication helper utilities used by routes."""
from __future__ import annotations

import re
from functools import wraps
from typing import List, Optional, Tuple

from flask import current_app, g, session
from werkzeug.security import check_password_hash, generate_password_hash

from models import USER_ROLES, User, db
from services.errors import ConflictError, Forbidden, Unauthenticated, ValidationError
from services.transaction import transaction


def login_user(user: User) -> None:
    session['user_id'] = user.id
    session['role'] = user.role
    g._cached_user = user


def logout_user() -> None:
    session.pop('user_id', None)
    session.pop('role', None)
    g.pop('_cached_user', None)


def get_current_user() -> Optional[User]:
    user_id = session.get('user_id')
    if not user_id:
        return None
    cached = g.get('_cached_user')
    if cached is not None and cached.id == user_id:
        return cached
    user = db.session.get(User, user_id)
    g._cached_user = user
    return user


def require_user() -> User:
    user = get_current_user()
    if not user:
        raise Unauthenticated('Not authenticated')
    return user


def require_role(user: User, role: str) -> User:
    if role not in USER_ROLES:
        raise ValueError(f'unknown role {role!r}')
    if user.role != role:
        raise Forbidden(f'Unauthorized. {role.capitalize()} access required.')
    return user


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        require_user()
        return view(*args, **kwargs)

    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        require_role(require_user(), 'admin')
        return view(*args, **kwargs)

    return wrapped


def is_school_email(email: str) -> bool:
    return bool(re.match(current_app.config['SCHOOL_EMAIL_PATTERN'], email, re.IGNORECASE))


def provision_user(
    email: Optional[str],
    password: Optional[str],
    full_name: Optional[str] = None,
    role: str = 'student',
) -> Tuple[User, List[str]]:
    """Create the profile for a first-time user.

    School addresses carry the student number in their local part.
    """
    email = (email or '').strip().lower()
    if not email or '@' not in email:
        raise ValidationError('A valid email address is required')
    if not password:
        raise ValidationError('Password is required')
    warnings = []
    school = is_school_email(email)
    if not school:
        if current_app.config['REQUIRE_SCHOOL_EMAIL']:
            raise ValidationError('Please register with your school email address')
        warnings.append('Email is not a valid school email; student id was not derived')
    with transaction('Error creating user profile', conflict_message='An account with this email already exists'):
        if User.query.filter_by(email=email).first():
            raise ConflictError('An account with this email already exists')
        user = User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name=(full_name or '').strip() or 'User',
            student_id=email.split('@')[0] if school else None,
            role=role,
            status='active',
            medical_certificate_status='none',
        )
        db.session.add(user)
    current_app.logger.info('Provisioned %s profile for %s', role, email)
    return user, warnings


def authenticate(email: Optional[str], password: Optional[str]) -> User:
    email = (email or '').strip().lower()
    user = User.query.filter_by(email=email).first() if email else None
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password or ''):
        raise Unauthenticated('Invalid email or password')
    return user
