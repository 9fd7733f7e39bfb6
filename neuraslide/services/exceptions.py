"""Domain exceptions raised by the webhook pipeline services."""


class InvalidSignature(Exception):
    """Raised when a webhook body cannot be proven to come from its provider."""


class NotFound(Exception):
    """Raised when an external id does not resolve to a local record."""


class ResponseGenerationError(Exception):
    """Raised when an automation response cannot be produced."""


class InvalidTransition(Exception):
    """Raised when a subscription status change is not allowed."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid subscription status transition {current.value} -> {target.value}"
        )


class InstagramApiError(Exception):
    """Raised when the Graph API rejects an outbound call."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class InvalidPayload(Exception):
    """Raised when a verified webhook body is not a recognisable delivery."""
