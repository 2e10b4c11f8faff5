"""Application configuration profiles."""
from __future__ import annotations

import os

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_URI = os.environ.get('DATABASE_URL', f"sqlite:///{os.path.join(BASE_DIR, 'app.db')}")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class BaseConfig:
    SQLALCHEMY_DATABASE_URI = DEFAULT_DB_URI
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('FLASK_SECRET', 'dev-secret-key')
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PREFERRED_URL_SCHEME = os.environ.get('PREFERRED_URL_SCHEME', 'http')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Reservation window. The UI caps custom durations at 24 hours.
    MAX_BORROW_HOURS = int(os.environ.get('MAX_BORROW_HOURS', 24))
    ENFORCE_MAX_BORROW_HOURS = _env_flag('ENFORCE_MAX_BORROW_HOURS', True)
    ORPHAN_REPAIR_RETURN_DAYS = 3

    CERTIFICATE_UPLOAD_FOLDER = os.environ.get(
        'CERTIFICATE_UPLOAD_FOLDER', os.path.join(BASE_DIR, 'uploads', 'medical-certificates')
    )
    ALLOWED_CERTIFICATE_EXTENSIONS = {'pdf', 'png', 'jpg', 'jpeg'}
    BICYCLE_IMAGE_FOLDER = os.environ.get(
        'BICYCLE_IMAGE_FOLDER', os.path.join(BASE_DIR, 'uploads', 'bicycle-images')
    )
    ALLOWED_IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024

    SCHOOL_EMAIL_PATTERN = r'^[0-9]{2}-[0-9]{5}@g\.batstate-u\.edu\.ph$'
    REQUIRE_SCHOOL_EMAIL = _env_flag('REQUIRE_SCHOOL_EMAIL', False)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    WTF_CSRF_ENABLED = False


class ProductionConfig(BaseConfig):
    DEBUG = False
    SESSION_COOKIE_SECURE = True


config_by_name = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
