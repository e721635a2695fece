from __future__ import annotations
from typing import Any


# ----------------------------
# Error taxonomy
# ----------------------------
class OrderError(Exception):
    """Base for every error the order lifecycle raises.

    `status_code` and `code` tell the HTTP layer how to answer; `context`
    carries whatever identifiers are useful in a log line.
    """
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class ValidationError(OrderError):
    status_code = 400
    code = "validation_error"


class ConflictError(OrderError):
    status_code = 409
    code = "conflict"


class NotFoundError(OrderError):
    status_code = 404
    code = "not_found"


class SignatureError(OrderError):
    status_code = 400
    code = "invalid_signature"


# acknowledged so the provider stops redelivering
class CorrelationError(OrderError):
    status_code = 200
    code = "uncorrelated_event"


class GatewayError(OrderError):
    status_code = 502
    code = "gateway_error"


class StoreError(OrderError):
    status_code = 502
    code = "store_error"


class DeliveryError(OrderError):
    status_code = 502
    code = "delivery_error"


class ConfigError(OrderError):
    code = "config_error"
