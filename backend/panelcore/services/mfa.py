"""
MFA Service - TOTP secret issuing, code validation and the bind/unbind protocol.

Binding writes MFASecret, MFAInterval and finally MFAStatus. The status is the
commit flag: MFA only counts as enabled once the status is ``enable`` and the
secret and interval it guards are usable, so an interrupted bind reads as
disabled.
"""
import base64
import binascii
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Dict

import pyotp
import qrcode

from ..models.setting import DISABLE, ENABLE, SettingKey
from .errors import ConflictError, ValidationError
from .settings_store import SettingsStore, apply_sequence

logger = logging.getLogger(__name__)

SECRET_LENGTH = 32  # base32 chars -> 160 bits
CODE_DIGITS = 6


@dataclass
class Otp:
    """Provisioning payload handed to the client, never persisted."""
    secret: str
    qr_image: str
    uri: str

    def to_dict(self) -> Dict[str, str]:
        return {"secret": self.secret, "qrImage": self.qr_image, "uri": self.uri}


def parse_interval(interval) -> int:
    """Interval in seconds; must be a positive integer."""
    try:
        value = int(str(interval).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"invalid MFA interval: {interval!r}")
    if value <= 0:
        raise ValidationError(f"MFA interval must be positive, got {value}")
    return value


def issue(account: str, title: str, interval) -> Otp:
    """Generate a fresh secret and its otpauth:// provisioning payload."""
    seconds = parse_interval(interval)
    if not title or not title.strip():
        raise ValidationError("MFA issuer title is required")

    secret = pyotp.random_base32(length=SECRET_LENGTH)
    uri = pyotp.TOTP(secret, interval=seconds).provisioning_uri(
        name=account, issuer_name=title.strip()
    )

    qr = qrcode.QRCode(version=None, box_size=6, border=2)
    qr.add_data(uri)
    qr.make(fit=True)
    buf = BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buf)
    img_base64 = base64.b64encode(buf.getvalue()).decode()

    return Otp(secret=secret, qr_image=f"data:image/png;base64,{img_base64}", uri=uri)


def validate(code: str, interval, secret: str, valid_window: int = 1) -> bool:
    """True if ``code`` matches the current time step or one within ``valid_window``.

    pyotp compares with hmac.compare_digest, so the comparison time does not
    depend on how many digits match.
    """
    if not secret or code is None:
        return False
    code = str(code).strip()
    if len(code) != CODE_DIGITS or not code.isdigit():
        return False
    try:
        seconds = parse_interval(interval)
        return pyotp.TOTP(secret, interval=seconds).verify(code, valid_window=valid_window)
    except (ValidationError, binascii.Error, ValueError):
        return False


def is_enabled(values: Dict[str, str]) -> bool:
    """Effective MFA state from raw MFA* values."""
    if values.get(SettingKey.MFA_STATUS.value) != ENABLE:
        return False
    if not values.get(SettingKey.MFA_SECRET.value):
        return False
    try:
        parse_interval(values.get(SettingKey.MFA_INTERVAL.value))
    except ValidationError:
        return False
    return True


class MFAService:
    """Bind protocol over the settings store: unbound -> bound -> unbound."""

    _KEYS = (SettingKey.MFA_STATUS, SettingKey.MFA_SECRET, SettingKey.MFA_INTERVAL)

    def __init__(self, store: SettingsStore, account: str = "admin", valid_window: int = 1):
        self.store = store
        self.account = account
        self.valid_window = valid_window

    def load(self, title: str, interval) -> Otp:
        return issue(self.account, title, interval)

    def enabled(self) -> bool:
        return is_enabled(self.store.get_many(self._KEYS))

    def bind(self, code: str, interval, secret: str) -> None:
        seconds = parse_interval(interval)
        if not secret:
            raise ValidationError("MFA secret is required")
        try:
            padded = secret.upper() + "=" * (-len(secret) % 8)
            base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            raise ValidationError("MFA secret is not valid base32")
        if self.enabled():
            raise ConflictError("MFA is already bound; unbind it first")
        if not validate(code, seconds, secret, self.valid_window):
            logger.warning("MFA bind rejected: code is not valid")
            raise ValidationError("code is not valid")

        apply_sequence(self.store, [
            (SettingKey.MFA_SECRET, secret),
            (SettingKey.MFA_INTERVAL, str(seconds)),
            (SettingKey.MFA_STATUS, ENABLE),
        ], operation="mfa bind")
        logger.info(f"MFA bound (interval {seconds}s)")

    def unbind(self) -> None:
        # Status first, so a failure after it still reads as disabled
        apply_sequence(self.store, [
            (SettingKey.MFA_STATUS, DISABLE),
            (SettingKey.MFA_SECRET, ""),
        ], operation="mfa unbind")
        logger.info("MFA unbound")

    def check(self, code: str) -> bool:
        """Validate a login code against the bound secret."""
        values = self.store.get_many(self._KEYS)
        if not is_enabled(values):
            return False
        return validate(
            code,
            values[SettingKey.MFA_INTERVAL.value],
            values[SettingKey.MFA_SECRET.value],
            self.valid_window,
        )
