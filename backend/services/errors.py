"""
Service errors rendered by the API as {"error": message, "code": code}.
"""


class ServiceError(Exception):

    def __init__(self, code: str, message: str, status_code: int):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class ReviewRejected(ServiceError):
    """Review submission or listing refused; no write was made."""


class AccessDenied(ServiceError):
    """Caller is not authenticated or lacks the required role."""


def unauthorized(message: str = "Unauthorized") -> AccessDenied:
    return AccessDenied("UNAUTHORIZED", message, 401)


def forbidden(message: str) -> AccessDenied:
    return AccessDenied("FORBIDDEN", message, 403)
