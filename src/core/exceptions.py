"""Custom exceptions for the application."""

from typing import Any, Dict, Optional


class BaseAPIException(Exception):
    """Base exception for all API exceptions."""

    def __init__(
        self,
        message: str = "An error occurred",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BaseAPIException):
    """Raised when validation fails."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 422, details)


class NotFoundError(BaseAPIException):
    """Raised when a resource is not found."""

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 404, details)


class UnauthorizedError(BaseAPIException):
    """Raised when authentication fails."""

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 401, details)


class ForbiddenError(BaseAPIException):
    """Raised when user lacks permissions."""

    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 403, details)


class ConflictError(BaseAPIException):
    """Raised when there's a conflict with existing data."""

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 409, details)


class BadRequestError(BaseAPIException):
    """Raised when the request is malformed."""

    def __init__(self, message: str = "Bad request", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 400, details)


class GoneError(BaseAPIException):
    """Raised when a resource existed but is no longer available."""

    def __init__(self, message: str = "Gone", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 410, details)


class InternalServerError(BaseAPIException):
    """Raised when an internal server error occurs."""

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 500, details)


class ServiceUnavailableError(BaseAPIException):
    """Raised when a service is temporarily unavailable."""

    def __init__(self, message: str = "Service unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 503, details)


# Channel linking

class ChannelNotFoundError(NotFoundError):
    """Raised when a channel id is not a known channel."""

    def __init__(self, channel_id: str):
        super().__init__(f"Unknown channel: {channel_id}", {"channel_id": channel_id})
        self.channel_id = channel_id


class ChannelInactiveError(ConflictError):
    """Raised when linking is attempted on a disabled channel."""

    def __init__(self, channel_id: str):
        super().__init__(f"Channel is not active: {channel_id}", {"channel_id": channel_id})
        self.channel_id = channel_id


class ChannelNotConfiguredError(InternalServerError):
    """Raised when no bot handle is configured for a channel."""

    def __init__(self, channel_id: str):
        super().__init__(f"{channel_id.title()} bot is not configured", {"channel_id": channel_id})
        self.channel_id = channel_id


class NonceStorageError(ServiceUnavailableError):
    """Transient failure persisting a link nonce. Callers may retry."""

    def __init__(self, message: str = "Could not store verification code, please retry"):
        super().__init__(message)


class InvalidNonceError(BadRequestError):
    """Raised when a nonce is unknown, expired, used or for another channel."""

    def __init__(self, reason: str, message: str = "Invalid or expired verification code."):
        super().__init__(message, {"reason": reason})
        self.reason = reason


class LinkExpiredError(GoneError):
    """Raised when the status of an expired nonce is requested."""

    def __init__(self):
        super().__init__("Verification code expired", {"status": "expired"})


class ChannelAlreadyLinkedError(ConflictError):
    """Raised when the external account already belongs to another user."""

    def __init__(self, channel_id: str):
        super().__init__(
            "This channel account is already linked to another user.",
            {"channel_id": channel_id},
        )


# Identity

class IdentityProviderError(BaseAPIException):
    """Raised when the identity provider rejects a signup or login."""

    def __init__(self, message: str = "Could not create account"):
        super().__init__(message, 400)


class DuplicateIdentityError(IdentityProviderError):
    """Raised when an account with the same email already exists."""

    def __init__(self, message: str = "An account with this email already exists"):
        super().__init__(message)


class SignupRedirect(Exception):
    """Redirect signal raised at the end of signup and login flows.

    Not an error: catch-all handlers must re-raise it untouched.
    """

    def __init__(self, url: str, user_id: Optional[str] = None):
        self.url = url
        self.user_id = user_id
        super().__init__(url)


# Billing

class WebhookSignatureError(BadRequestError):
    """Raised when a billing webhook payload fails signature verification."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)
