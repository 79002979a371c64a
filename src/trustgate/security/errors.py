"""
TrustGate security error taxonomy

Each error carries a ``reason`` code that is written to the security log. The
reason never reaches the end user: failed verifications only say "invalid code".
"""


class TrustGateError(Exception):
    """Base class for TrustGate errors"""

    reason = "ERROR"

    def __init__(self, message: str = "", reason: str = None):
        super().__init__(message or self.__class__.__name__)
        if reason is not None:
            self.reason = reason


class NotFoundError(TrustGateError):
    """Device or user unknown"""
    reason = "INVALID_DEVICE"


class UnauthorizedError(TrustGateError):
    """Device belongs to a different user or tenant, or is inactive"""
    reason = "INVALID_DEVICE"


class ExpiredError(TrustGateError):
    """SMS code missing or past its window"""
    reason = "CODE_EXPIRED"


class RateLimitedError(TrustGateError):
    """Too many failed attempts on a device"""
    reason = "RATE_LIMITED"


class InvalidCodeError(TrustGateError):
    """Malformed or wrong code"""
    reason = "INVALID_CODE"


class AssessmentFailure(TrustGateError):
    """Internal error while computing a risk assessment"""
    reason = "ASSESSMENT_ERROR"


class DeliveryError(TrustGateError):
    """SMS transport could not deliver a code"""
    reason = "DELIVERY_FAILED"


class EventSchemaError(TrustGateError, ValueError):
    """Event detail payload outside the closed schema"""
    reason = "INVALID_EVENT_DETAILS"


class MFAError(TrustGateError):
    """Unexpected failure during MFA setup or management"""
    reason = "MFA_ERROR"


class DeviceTrustConflict(TrustGateError):
    """Device trust history could not be updated under contention"""
    reason = "TRUST_UPDATE_CONFLICT"
