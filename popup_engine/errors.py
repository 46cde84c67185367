"""
Domain errors for the Popup Engine

Only malformed input, unknown ids, illegal pipeline moves and lost
optimistic writes are exceptions. Failed verifications and raised disputes
are ordinary result values (see CheckinResult and DisputeRecord).
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine errors"""

    code = "ENGINE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(EngineError):
    """Malformed input, rejected before any computation"""

    code = "VALIDATION_INVALID_VALUE"
    status_code = 400


class NotFoundError(EngineError):
    """Referenced entity does not exist"""

    code = "NOT_FOUND_RESOURCE"
    status_code = 404


class IllegalTransition(EngineError):
    """
    Pipeline action attempted from the wrong stage, by the wrong role,
    or against a snapshot that fails the action's predicate.

    `rule` names the violated rule so callers can branch on it.
    """

    code = "PIPELINE_ILLEGAL_TRANSITION"
    status_code = 409

    def __init__(
        self,
        rule: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.rule = rule

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["error"]["rule"] = self.rule
        return payload


class ConcurrencyConflict(EngineError):
    """Optimistic write lost a race; re-read and retry"""

    code = "PIPELINE_VERSION_CONFLICT"
    status_code = 409
