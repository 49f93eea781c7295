"""Error taxonomy for the match reporting and bracket engine.

Every error the core surfaces to a caller derives from KartopsError and carries
the HTTP status the API layer renders it with. VersionConflict is internal: the
retry loops translate it into ConflictError once their budget is spent.
"""
from typing import Any, Dict, Optional


class KartopsError(Exception):
    """Base error with an HTTP status, a stable code and an optional field name."""

    status_code = 400
    code = "ERROR"

    def __init__(self, message: str, field: Optional[str] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.field = field
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.field:
            body["field"] = self.field
        body.update(self.extra)
        return body


class NotFoundError(KartopsError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidInputError(KartopsError):
    status_code = 422
    code = "INVALID_INPUT"


class UnauthorizedError(KartopsError):
    status_code = 403
    code = "UNAUTHORIZED"


class AlreadyCompletedError(KartopsError):
    status_code = 409
    code = "ALREADY_COMPLETED"


class ConflictError(KartopsError):
    status_code = 409
    code = "CONFLICT"

    def __init__(self, message: str, field: Optional[str] = None, **extra: Any):
        extra.setdefault("requires_refresh", True)
        super().__init__(message, field, **extra)


class AdvancementConflictError(ConflictError):
    """A downstream slot changed under the advancer; needs an operator, not a retry."""

    code = "ADVANCEMENT_CONFLICT"


class DependencyFailureError(KartopsError):
    status_code = 503
    code = "DEPENDENCY_FAILURE"


class VersionConflict(Exception):
    """Raised by the version store when the stored version moved past the expected one."""

    def __init__(self, match_id: int, expected_version: int):
        super().__init__(f"Match {match_id} is no longer at version {expected_version}")
        self.match_id = match_id
        self.expected_version = expected_version


class DisputedError(ConflictError):
    """Both reports are in and disagree; only an admin override can settle the match."""

    code = "DISPUTED"

    def __init__(self, message: str, field: Optional[str] = None, **extra: Any):
        extra.setdefault("requires_refresh", False)
        super().__init__(message, field, **extra)
