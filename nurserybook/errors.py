"""Error types raised by the booking core.

Each error carries the HTTP status the API answers with and a stable
``code`` string that clients can switch on.
"""


class NurseryError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.code, "detail": self.message}


class NotFound(NurseryError):
    status_code = 404
    code = "not_found"


class ValidationError(NurseryError):
    code = "validation_error"


class InvalidPlantPrice(ValidationError):
    code = "invalid_plant_price"


class VarietyLimitExceeded(NurseryError):
    code = "variety_limit_exceeded"


class UnknownVariety(NurseryError):
    code = "unknown_variety"


class VarietyNotAssignedToCenter(NurseryError):
    code = "variety_not_assigned_to_center"


class InsufficientStock(NurseryError):
    status_code = 409
    code = "insufficient_stock"


class AdvanceNotPaid(NurseryError):
    status_code = 409
    code = "advance_not_paid"


class InvalidStateTransition(NurseryError):
    status_code = 409
    code = "invalid_state_transition"


class SignatureMismatch(NurseryError):
    code = "signature_mismatch"


class GatewayNotConfigured(NurseryError):
    status_code = 503
    code = "gateway_not_configured"


class GatewayError(NurseryError):
    status_code = 502
    code = "gateway_error"


class Unauthorized(NurseryError):
    status_code = 403
    code = "unauthorized"
