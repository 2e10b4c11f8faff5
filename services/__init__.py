"""Service layer package for encapsulating business logic."""

from .errors import (  # noqa: F401
    AccountSuspended,
    AlreadyBorrowing,
    BicycleUnavailable,
    ConflictError,
    Forbidden,
    NotCertified,
    NotFoundError,
    PersistenceError,
    ServiceError,
    Unauthenticated,
    ValidationError,
)
from .borrowing import BorrowService, recompute_overdue  # noqa: F401
from .certificates import CertificateService  # noqa: F401
from .auditor import ConsistencyAuditor, DataConsistencyIssue  # noqa: F401
from .auth import login_user, logout_user, login_required, admin_required, get_current_user  # noqa: F401
