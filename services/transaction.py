"""Unit-of-work helper shared by the services."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from services.errors import ConflictError, PersistenceError, ServiceError


@contextmanager
def transaction(failure_message: str, *, conflict_message: Optional[str] = None):
    """Run the block as one commit; any failure rolls back every write in it.

    ``IntegrityError`` becomes ``ConflictError`` when ``conflict_message`` is
    given, otherwise every store failure surfaces as ``PersistenceError``.
    """
    try:
        yield db.session
        db.session.commit()
    except ServiceError:
        db.session.rollback()
        raise
    except IntegrityError as exc:
        db.session.rollback()
        if conflict_message:
            current_app.logger.warning('%s: %s', conflict_message, exc.orig)
            raise ConflictError(conflict_message) from exc
        current_app.logger.exception('%s: %s', failure_message, exc)
        raise PersistenceError(failure_message) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception('%s: %s', failure_message, exc)
        raise PersistenceError(failure_message) from exc
