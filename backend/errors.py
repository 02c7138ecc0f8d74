from typing import Optional


class PaymentLinkError(Exception):
    """Base class for errors surfaced to API callers with a reason code."""

    code = "PAYMENT_LINK_ERROR"
    status_code = 400

    def __init__(self, description: str):
        super().__init__(description)
        self.description = description

    def to_dict(self) -> dict:
        return {"code": self.code, "description": self.description}


class ValidationError(PaymentLinkError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, description: str, field: Optional[str] = None):
        super().__init__(description)
        self.field = field

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.field:
            payload["field"] = self.field
        return payload


class NotFoundError(PaymentLinkError):
    code = "NOT_FOUND_ERROR"
    status_code = 404


class PermissionDeniedError(PaymentLinkError):
    code = "PERMISSION_ERROR"
    status_code = 403


class InvalidStateError(PaymentLinkError):
    code = "INVALID_STATE"
    status_code = 409

    def __init__(self, description: str, status: Optional[str] = None):
        super().__init__(description)
        self.status = status

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.status:
            payload["status"] = self.status
        return payload


class AmountMismatchError(PaymentLinkError):
    code = "AMOUNT_MISMATCH"
    status_code = 400


class AlreadyPaidError(PaymentLinkError):
    code = "ALREADY_PAID"
    status_code = 409

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["status"] = "paid"
        return payload


class GatewayError(PaymentLinkError):
    """Upstream gateway failure. Not retried; the caller sees a transient error."""

    code = "GATEWAY_ERROR"
    status_code = 502

    def __init__(self, description: str, upstream_status: Optional[int] = None, cause=None):
        super().__init__(description)
        self.upstream_status = upstream_status
        self.cause = cause


class StorageError(PaymentLinkError):
    code = "STORAGE_ERROR"
    status_code = 500

    def __init__(self, description: str, cause=None):
        super().__init__(description)
        self.cause = cause
