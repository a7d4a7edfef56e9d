"""
Typed failures raised by the settings services.

Every operation either returns normally or raises one of these; the API
layer maps ``kind`` to an HTTP status so clients can tell "bad input" from
"the server could not apply this right now".
"""
from typing import Optional


class SettingsError(Exception):
    """Base class for all settings failures."""

    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SettingsError):
    """Malformed input. Nothing was attempted."""

    kind = "validation"


class NotFoundError(SettingsError):
    """A setting or the installed certificate does not exist."""

    kind = "not_found"


class ConflictError(SettingsError):
    """Input is well-formed but conflicts with current state. Nothing changed."""

    kind = "conflict"


class PartialApplyError(SettingsError):
    """A multi-key write sequence stopped partway.

    ``committed`` of ``total`` writes are durable; the keys are listed so an
    operator can reconcile by hand.
    """

    kind = "partial_apply"

    def __init__(self, message: str, committed: int, total: int,
                 committed_keys: Optional[list] = None, failed_key: Optional[str] = None):
        super().__init__(message)
        self.committed = committed
        self.total = total
        self.committed_keys = committed_keys or []
        self.failed_key = failed_key


class ApplyFailedError(SettingsError):
    """A live-resource swap failed after validation. Prior state was restored."""

    kind = "apply_failed"


class StoreError(SettingsError):
    """A single store read or write failed."""

    kind = "store"


# ── Named results ───────────────────────────────────────────────────────────

class InvalidOldPassword(ValidationError):
    pass


class PolicyViolation(ValidationError):
    pass


class InvalidCertificate(ValidationError):
    pass


class InvalidAddress(ValidationError):
    pass


class KeyMismatch(ConflictError):
    pass


class PortInUse(ConflictError):
    pass


class ReapplyFailed(ApplyFailedError):
    pass
