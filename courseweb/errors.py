"""
errors.py — application error taxonomy.

Every failure that reaches a request handler is one of these. main.py maps
them to a JSON body {"error": message} with the class's status code.
"""


class AppError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Missing or malformed input."""
    status_code = 400


class Unauthorized(AppError):
    """Missing, invalid or expired bearer token, or wrong password."""
    status_code = 401


class NotFound(AppError):
    status_code = 404


class ServerConfigError(AppError):
    """A required secret or credential is not configured."""
    status_code = 500


class UpstreamError(AppError):
    """The database or Redis call failed."""
    status_code = 500
