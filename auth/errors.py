"""
auth/errors.py -- Typed failures raised by the auth core.

Every outcome the boundary has to translate into a transport status is one of
these classes. The core raises them; api/main.py maps them to HTTP statuses
by class, so the core carries no transport dependency.

Each class has a stable machine-readable `code` that ends up in the error
envelope, and a default message that is safe to show to a client. Messages
never name the principal, the token value or the code.

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every typed auth failure."""

    code = "auth_error"
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


class MissingCredential(AuthError):
    """A required argument (login, password, code) was not supplied."""

    code = "missing_credential"
    message = "A required credential is missing."

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Missing required field: {field}.")


class DuplicateLogin(AuthError):
    code = "duplicate_login"
    message = "A user with that login is already registered."


class InvalidCredentials(AuthError):
    # Same text for unknown login and wrong password.
    code = "bad_credentials"
    message = "Cannot find user with given combination of login and password."


class AuthRequired(AuthError):
    code = "auth_required"
    message = "Token required."


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Token is not valid."


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token expired."


class Forbidden(AuthError):
    code = "forbidden"
    message = "User doesn't have all required permissions."


class UserNotFound(AuthError):
    code = "user_not_found"
    message = "User not found."


class GroupNotFound(AuthError):
    code = "group_not_found"
    message = "User group not found."


class CodeMismatch(AuthError):
    """Missing, expired and already-consumed codes all look the same."""

    code = "code_mismatch"
    message = "Code doesn't match."


class WeakPassword(AuthError):
    """The configured password validator rejected the password."""

    code = "weak_password"
    message = "Password does not satisfy the password policy."

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.message
        super().__init__(self.reason)


class IntegrityViolation(AuthError):
    """Stored data contradicts an invariant. Logged in full, reported opaquely."""

    code = "internal_error"
    message = "An unexpected error occurred."


class DeliveryFailure(AuthError):
    """The code sender could not hand the code to its channel."""

    code = "delivery_failed"
    message = "Failed to deliver the code."
