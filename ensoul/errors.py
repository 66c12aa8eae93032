# ensoul/errors.py
from typing import Any, Dict, Optional


class EnsoulError(Exception):
    """
    Base of every error surfaced to a caller.

    - code: stable machine-readable token ("duplicate_dimension", "cooldown", ...)
    - status: HTTP status the server maps it to
    - extra: additional fields merged into the error body
    """
    status = 400
    default_code = "error"

    def __init__(self, message: str, code: Optional[str] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.extra: Dict[str, Any] = extra

    def to_body(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationFailed(EnsoulError):
    status = 400
    default_code = "invalid_shape"


class Unauthenticated(EnsoulError):
    status = 401
    default_code = "unauthenticated"


class Forbidden(EnsoulError):
    status = 403
    default_code = "forbidden"


class NotClaimed(Forbidden):
    default_code = "not_claimed"


class NotFound(EnsoulError):
    status = 404
    default_code = "not_found"


class Conflict(EnsoulError):
    status = 409
    default_code = "conflict"


class Retired(EnsoulError):
    status = 410
    default_code = "retired"


class CooldownActive(EnsoulError):
    status = 429
    default_code = "cooldown"


class ServiceUnavailable(EnsoulError):
    status = 503
    default_code = "unavailable"


# External dependency failures. Absorbed by the pipeline/reconciler, never
# returned to an HTTP caller.

class JudgeUnavailable(Exception):
    pass


class ChainUnavailable(Exception):
    pass