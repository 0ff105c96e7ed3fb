"""
pageant_engine/errors.py
Typed error kinds for score submission, tabulation and certification.

CORE PRINCIPLES:
- Every failure is raised to the immediate caller, never logged-only
- Errors are machine-readable (stable ``code``) and carry structured details
- The engine never renders user-facing text; callers translate codes

ERROR STRUCTURE (``to_dict``):
{
    "success": false,
    "error": "ErrorType",
    "message": "Developer-facing description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}
"""
from typing import Optional, Dict, Any


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    SCORE_OUT_OF_RANGE = "SCORE_OUT_OF_RANGE"
    TOO_MANY_DECIMALS = "TOO_MANY_DECIMALS"
    REASON_REQUIRED = "REASON_REQUIRED"

    SCORE_LOCKED = "SCORE_LOCKED"
    CRITERION_LOCKED = "CRITERION_LOCKED"
    DEDUCTION_LOCKED = "DEDUCTION_LOCKED"

    NOT_ASSIGNED = "NOT_ASSIGNED"
    ALREADY_CERTIFIED = "ALREADY_CERTIFIED"
    ALREADY_SIGNED = "ALREADY_SIGNED"
    ROLE_NOT_PERMITTED = "ROLE_NOT_PERMITTED"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"

    PREREQUISITE_NOT_MET = "PREREQUISITE_NOT_MET"
    NOTHING_TO_REVOKE = "NOTHING_TO_REVOKE"
    JUDGES_NOT_CERTIFIED = "JUDGES_NOT_CERTIFIED"
    NO_SCORES_TO_REMOVE = "NO_SCORES_TO_REMOVE"
    REMOVAL_NOT_PENDING = "REMOVAL_NOT_PENDING"
    REMOVAL_ALREADY_PENDING = "REMOVAL_ALREADY_PENDING"

    NO_JUDGES_ASSIGNED = "NO_JUDGES_ASSIGNED"
    SCORE_CAP_MISSING = "SCORE_CAP_MISSING"
    INVALID_AGGREGATION_RULE = "INVALID_AGGREGATION_RULE"

    NOT_FOUND = "NOT_FOUND"


class EngineError(Exception):
    """Base engine exception with consistent structure"""

    error = "EngineError"
    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(EngineError):
    """Input outside the accepted domain (e.g. score out of range)"""
    error = "ValidationError"
    default_code = ErrorCode.VALIDATION_ERROR


class LockedError(EngineError):
    """Write attempted on data frozen by a certification"""
    error = "LockedError"
    default_code = ErrorCode.SCORE_LOCKED


class NotAssignedError(EngineError):
    """Judge is not on the roster of the subcategory"""
    error = "NotAssignedError"
    default_code = ErrorCode.NOT_ASSIGNED


class AlreadyCertifiedError(EngineError):
    """Level is already certified; re-certification needs a revocation first"""
    error = "AlreadyCertifiedError"
    default_code = ErrorCode.ALREADY_CERTIFIED


class RoleError(EngineError):
    """Role claim does not permit the requested action"""
    error = "RoleError"
    default_code = ErrorCode.ROLE_NOT_PERMITTED


class SignatureMismatchError(EngineError):
    """Typed signature does not match the signer's name on file"""
    error = "SignatureMismatchError"
    default_code = ErrorCode.SIGNATURE_MISMATCH


class PreconditionError(EngineError):
    """Record is in the wrong state for the requested transition"""
    error = "PreconditionError"
    default_code = ErrorCode.PREREQUISITE_NOT_MET


class ConfigurationError(EngineError):
    """Data-setup problem upstream of any user action"""
    error = "ConfigurationError"
    default_code = ErrorCode.NO_JUDGES_ASSIGNED


class NotFoundError(EngineError):
    """Referenced entity does not exist"""
    error = "NotFoundError"
    default_code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message, details={"resource": resource, "id": identifier})
