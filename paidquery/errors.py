from typing import Dict, Optional


class PaidQueryError(Exception):
    """Base exception for the report gateway."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(PaidQueryError):
    pass


class ValidationError(PaidQueryError):
    status_code = 400

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}


class NotFound(PaidQueryError):
    status_code = 404

    def __init__(self, secret: str):
        super().__init__("Query not found")
        self.secret = secret


class CapacityError(PaidQueryError):
    status_code = 503


class InternalError(PaidQueryError):
    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


class InvalidTransition(PaidQueryError):
    def __init__(self, current_state, target_state):
        super().__init__(f"Cannot transition from {current_state} to {target_state}")
        self.current_state = current_state
        self.target_state = target_state


# Pipeline errors. These end up as job failure reasons, not HTTP responses.

class PaymentTimeout(PaidQueryError):
    def __init__(self, message: str = "Payment not found within required timeframe"):
        super().__init__(message)


class OracleTransientError(PaidQueryError):
    pass


class ExecutorError(PaidQueryError):
    pass
