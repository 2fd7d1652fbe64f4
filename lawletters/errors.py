"""Typed domain exceptions for API error mapping.

Services raise these; ``main.py`` registers one handler that maps each
class to its HTTP status code, so routers never translate error strings.

Usage:
    # In service layer
    raise NotFoundError("Letter", letter_id)

    # Anywhere above it
    except InvalidStateError as e:
        logger.warning("Rejected transition: %s", e)
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    status_code = 400
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    """Malformed or missing input. Maps to HTTP 400."""

    status_code = 400


class AuthError(DomainError):
    """Missing, invalid or expired credentials. Maps to HTTP 401."""

    status_code = 401


class AuthorizationError(DomainError):
    """Valid identity without the required role. Maps to HTTP 403."""

    status_code = 403


class NotFoundError(DomainError):
    """Referenced entity does not exist. Maps to HTTP 404."""

    status_code = 404

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class InvalidStateError(DomainError):
    """Requested transition is not legal from the current state. Maps to HTTP 409."""

    status_code = 409


class GenerationError(DomainError):
    """AI service failed or returned empty content. Retryable."""

    status_code = 502
    retryable = True


class ExternalServiceError(DomainError):
    """Payment, identity or email provider failed. Retryable with backoff."""

    status_code = 503
    retryable = True

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class InvariantViolationError(DomainError):
    """Bookkeeping inconsistency (double redemption, mismatched counters)."""

    status_code = 500


class WebhookVerificationError(DomainError):
    """Inbound webhook failed signature verification."""

    status_code = 400
