"""Webhook relay exception hierarchy.

Configuration errors (bad endpoint specs) surface synchronously to callers of
the registration API. Transport and terminal delivery errors are never raised:
they are recorded on the delivery row and are only observable through delivery
history.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base exception for all webhook relay errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "webhook_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(WebhookError):
    """Invalid endpoint configuration or request parameter.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class EndpointLimitError(ValidationError):
    """A scope already has the maximum number of registered endpoints."""

    code: str = "endpoint_limit_exceeded"

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__("endpoints", f"Maximum number of webhooks per scope exceeded ({limit})")


class NotFoundError(WebhookError):
    """Resource not found, or owned by another scope.

    Attributes:
        resource_type: Type of resource ("webhook_endpoint", "webhook_delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class DeliveryStateError(WebhookError):
    """A delivery is in a state that does not allow the requested action.

    Raised when an operator asks to retry a delivery that already succeeded
    or is still queued for processing.
    """

    code: str = "invalid_delivery_state"

    def __init__(self, delivery_id: str, status: str, message: str) -> None:
        self.delivery_id = delivery_id
        self.status = status
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "delivery_id": self.delivery_id,
                "status": self.status,
                "message": self.message,
            }
        }


class StorageError(WebhookError):
    """Storage operation failed.

    Raised when an endpoint or delivery store cannot complete an operation.
    """

    code: str = "storage_error"


class ConfigurationError(WebhookError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"
