"""
Error taxonomy for the OpenSocial API.

Every failure that reaches a request boundary is either an APIException, rendered by the
error middleware as a JSON body with a stable code, or an unexpected exception, rendered as
a generic 500. Messages on APIException instances are safe to show to callers.
"""

from typing import Any, Dict


class APIException(Exception):
    """
    Base class for errors that are rendered to the caller.

    Attributes:
        status: HTTP status code of the response
        code: Stable, machine-readable error code
        message: Caller-safe error message
    """

    status: int = 500

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code} {message}")
        self.code = code
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class InvalidInput(APIException):
    """A request field is missing or malformed."""

    status = 400

    @staticmethod
    def missing_fields(*fields: str) -> "InvalidInput":
        return InvalidInput(
            "error-input-1000",
            "Missing required fields: {}".format(", ".join(fields)),
        )

    @staticmethod
    def invalid(msg: str = "Invalid input") -> "InvalidInput":
        return InvalidInput("error-input-1001", msg)


class Unauthenticated(APIException):
    """No valid session or API key accompanied the request."""

    status = 401

    @staticmethod
    def no_session() -> "Unauthenticated":
        return Unauthenticated("error-auth-1000", "Not authenticated")

    @staticmethod
    def api_key_required() -> "Unauthenticated":
        return Unauthenticated("error-auth-1001", "API key required")

    @staticmethod
    def invalid_api_key() -> "Unauthenticated":
        return Unauthenticated("error-auth-1002", "Invalid API key")


class Conflict(APIException):
    """A unique field collides with an existing record."""

    status = 409

    @staticmethod
    def duplicate_domain() -> "Conflict":
        return Conflict("error-conflict-1000", "App with this domain already exists")


class UpstreamFailure(APIException):
    """The identity network or the store failed to serve the request."""

    status = 500

    @staticmethod
    def identity_network(msg: str = "Identity network request failed") -> "UpstreamFailure":
        return UpstreamFailure("error-upstream-1000", msg)


class AuthorizationFailed(APIException):
    """
    Login initiation was rejected.

    The message carries the underlying failure unchanged so the caller can show it.
    """

    status = 400

    @staticmethod
    def from_exception(e: BaseException) -> "AuthorizationFailed":
        message = str(e) or "unexpected error"
        return AuthorizationFailed("error-login-1000", message)
