"""
Password Service - login password changes, complexity policy and expiry.

The stored hash and PasswordExpireAt are written as two single-key commits,
hash first: a failure between them leaves the new password active with the
old expiry, which the next change repairs.
"""
import logging
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..models.setting import ENABLE, SettingKey
from ..utils.security import get_password_hash, verify_password
from .errors import InvalidOldPassword, PolicyViolation, ValidationError
from .mfa import is_enabled as mfa_is_enabled
from .settings_store import SettingsStore, apply_sequence

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 30
    min_char_classes: int = 2

    @classmethod
    def from_settings(cls, cfg) -> "PasswordPolicy":
        return cls(
            min_length=cfg.PASSWORD_MIN_LENGTH,
            max_length=cfg.PASSWORD_MAX_LENGTH,
            min_char_classes=cfg.PASSWORD_MIN_CHAR_CLASSES,
        )

    def check(self, password: str, complexity: bool = True) -> None:
        """Raise PolicyViolation if ``password`` is not acceptable."""
        if not password or len(password) < self.min_length:
            raise PolicyViolation(f"password must be at least {self.min_length} characters")
        if len(password) > self.max_length:
            raise PolicyViolation(f"password must be at most {self.max_length} characters")
        if any(c.isspace() for c in password):
            raise PolicyViolation("password must not contain whitespace")
        if not complexity:
            return
        classes = sum([
            any(c in string.ascii_lowercase for c in password),
            any(c in string.ascii_uppercase for c in password),
            any(c in string.digits for c in password),
            any(c in string.punctuation for c in password),
        ])
        if classes < self.min_char_classes:
            raise PolicyViolation(
                f"password must mix at least {self.min_char_classes} of: "
                "lowercase, uppercase, digits, symbols"
            )


@dataclass
class CredentialState:
    """Read-only view of the credential keys."""
    password_hash: str
    password_expire_at: Optional[datetime]
    mfa_status: str
    mfa_secret: str
    mfa_interval: str
    mfa_enabled: bool


def parse_expire_at(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, TIME_FORMAT)
    except ValueError:
        logger.warning(f"Ignoring malformed {SettingKey.PASSWORD_EXPIRE_AT.value}: {value!r}")
        return None


class PasswordService:

    def __init__(self, store: SettingsStore, policy: PasswordPolicy,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.policy = policy
        self.clock = clock

    # ─────────────────────────────────────────────────────────── queries ──────

    def expiration_days(self) -> int:
        raw = self.store.get_or_default(SettingKey.EXPIRATION_DAYS, "0")
        try:
            return max(int(raw), 0)
        except ValueError:
            return 0

    def expire_at(self) -> Optional[datetime]:
        return parse_expire_at(self.store.get_or_default(SettingKey.PASSWORD_EXPIRE_AT, ""))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether the session layer must force the expired-password path."""
        if self.expiration_days() == 0:
            return False
        expire_at = self.expire_at()
        if expire_at is None:
            return False
        return (now or self.clock()) >= expire_at

    def check(self, password: str) -> bool:
        return verify_password(password, self.store.get_or_default(SettingKey.PASSWORD, ""))

    def credential_state(self) -> CredentialState:
        values = self.store.get_many([
            SettingKey.PASSWORD, SettingKey.PASSWORD_EXPIRE_AT,
            SettingKey.MFA_STATUS, SettingKey.MFA_SECRET, SettingKey.MFA_INTERVAL,
        ])
        return CredentialState(
            password_hash=values.get(SettingKey.PASSWORD.value, ""),
            password_expire_at=parse_expire_at(values.get(SettingKey.PASSWORD_EXPIRE_AT.value, "")),
            mfa_status=values.get(SettingKey.MFA_STATUS.value, ""),
            mfa_secret=values.get(SettingKey.MFA_SECRET.value, ""),
            mfa_interval=values.get(SettingKey.MFA_INTERVAL.value, ""),
            mfa_enabled=mfa_is_enabled(values),
        )

    # ─────────────────────────────────────────────────────────── changes ──────

    def change_password(self, old: str, new: str) -> None:
        self._replace(old, new, operation="password change")

    def handle_expired(self, old: str, new: str) -> None:
        """Reset path for an expired password; the old password is still the proof."""
        if not self.is_expired():
            raise ValidationError("password has not expired")
        self._replace(old, new, operation="expired password reset")

    def update_expiration_days(self, value) -> None:
        try:
            days = int(str(value).strip())
        except ValueError:
            raise ValidationError(f"invalid {SettingKey.EXPIRATION_DAYS.value}: {value!r}")
        if days < 0:
            raise ValidationError(f"{SettingKey.EXPIRATION_DAYS.value} must not be negative")
        apply_sequence(self.store, [
            (SettingKey.EXPIRATION_DAYS, str(days)),
            (SettingKey.PASSWORD_EXPIRE_AT, self._next_expiry(days)),
        ], operation="expiration update")
        logger.info(f"Password expiration window set to {days} days")

    def _replace(self, old: str, new: str, operation: str) -> None:
        if not self.check(old):
            logger.warning(f"{operation} rejected: old password does not match")
            raise InvalidOldPassword("old password is not correct")
        complexity = self.store.get_or_default(SettingKey.COMPLEXITY_VERIFICATION, ENABLE) == ENABLE
        self.policy.check(new, complexity=complexity)
        if new == old:
            raise PolicyViolation("new password must differ from the old one")

        apply_sequence(self.store, [
            (SettingKey.PASSWORD, get_password_hash(new)),
            (SettingKey.PASSWORD_EXPIRE_AT, self._next_expiry(self.expiration_days())),
        ], operation=operation)
        logger.info(f"{operation} applied")

    def _next_expiry(self, days: int) -> str:
        if days == 0:
            return ""
        return (self.clock() + timedelta(days=days)).strftime(TIME_FORMAT)
