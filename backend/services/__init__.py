# services/__init__.py
# ============================================================================
# TRAINER LEDGER - SERVICES MODULE
# ============================================================================
# Review aggregate service, bearer-token auth and API-facing errors
# ============================================================================

from services.auth import (
    AuthContext,
    TokenAuthenticator,
)

from services.errors import (
    ServiceError,
    ReviewRejected,
    AccessDenied,
)

from services.reviews import (
    ReviewService,
    ReviewResult,
    average_rating,
)

__all__ = [
    # Auth
    "AuthContext",
    "TokenAuthenticator",
    # Errors
    "ServiceError",
    "ReviewRejected",
    "AccessDenied",
    # Reviews
    "ReviewService",
    "ReviewResult",
    "average_rating",
]
