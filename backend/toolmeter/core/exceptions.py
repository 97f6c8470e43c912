class ToolmeterError(Exception):
    """Base exception for the entitlement backend."""

    pass


class StoreUnavailableError(ToolmeterError):
    """Raised when the primary entitlement store cannot be reached or times out."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Entitlement store unavailable during '{operation}'{detail}")


class BillingProviderError(ToolmeterError):
    """Raised when a call into the billing provider fails or times out."""

    pass


class WebhookValidationError(ToolmeterError):
    """Raised when an inbound webhook is rejected before any state mutation."""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(reason)
