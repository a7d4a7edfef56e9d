"""
TOTP issuing, code validation and the MFA bind/unbind protocol.
"""

import time

import pyotp
import pytest

from panelcore.models.setting import SettingKey
from panelcore.services.errors import ConflictError, PartialApplyError, ValidationError
from panelcore.services.mfa import MFAService, is_enabled, issue, validate


@pytest.fixture
def mfa(seeded_store) -> MFAService:
    return MFAService(seeded_store, account="admin", valid_window=1)


def test_issue_returns_provisioning_payload() -> None:
    otp = issue("admin", "Panel", 30)
    assert len(otp.secret) == 32
    assert otp.uri.startswith("otpauth://totp/")
    assert "issuer=Panel" in otp.uri
    assert otp.qr_image.startswith("data:image/png;base64,")
    assert set(otp.to_dict()) == {"secret", "qrImage", "uri"}


def test_issue_rejects_bad_interval() -> None:
    with pytest.raises(ValidationError):
        issue("admin", "Panel", 0)


def test_current_code_is_valid() -> None:
    secret = pyotp.random_base32(32)
    assert validate(pyotp.TOTP(secret, interval=30).now(), 30, secret)


def test_code_ten_steps_away_is_invalid() -> None:
    secret = pyotp.random_base32(32)
    totp = pyotp.TOTP(secret, interval=30)
    assert not validate(totp.at(time.time() + 10 * 30), 30, secret)
    assert not validate(totp.at(time.time() - 10 * 30), 30, secret)


@pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
def test_malformed_codes_are_invalid(code) -> None:
    assert not validate(code, 30, pyotp.random_base32(32))


def test_bind_enables_mfa(mfa, seeded_store) -> None:
    otp = mfa.load("Panel", 30)
    mfa.bind(pyotp.TOTP(otp.secret, interval=30).now(), 30, otp.secret)

    assert seeded_store.get(SettingKey.MFA_STATUS) == "enable"
    assert seeded_store.get(SettingKey.MFA_SECRET) == otp.secret
    assert seeded_store.get(SettingKey.MFA_INTERVAL) == "30"
    assert mfa.enabled()
    assert mfa.check(pyotp.TOTP(otp.secret, interval=30).now())


def test_bind_with_wrong_code_changes_nothing(mfa, seeded_store) -> None:
    before = seeded_store.all()
    secret = pyotp.random_base32(32)
    wrong = pyotp.TOTP(secret, interval=30).at(time.time() + 10 * 30)

    with pytest.raises(ValidationError, match="code is not valid"):
        mfa.bind(wrong, 30, secret)

    assert seeded_store.get(SettingKey.MFA_STATUS) == "disable"
    assert seeded_store.all() == before


def test_bind_while_bound_is_conflict(mfa) -> None:
    secret = pyotp.random_base32(32)
    mfa.bind(pyotp.TOTP(secret).now(), 30, secret)

    other = pyotp.random_base32(32)
    with pytest.raises(ConflictError):
        mfa.bind(pyotp.TOTP(other).now(), 30, other)


def test_bind_rejects_invalid_secret(mfa) -> None:
    with pytest.raises(ValidationError):
        mfa.bind("123456", 30, "not-base32!")


def test_unbind_disables_and_clears_secret(mfa, seeded_store) -> None:
    secret = pyotp.random_base32(32)
    mfa.bind(pyotp.TOTP(secret).now(), 30, secret)

    mfa.unbind()

    assert seeded_store.get(SettingKey.MFA_STATUS) == "disable"
    assert seeded_store.get(SettingKey.MFA_SECRET) == ""
    assert not mfa.enabled()
    assert not mfa.check(pyotp.TOTP(secret).now())


def test_interrupted_bind_reads_as_disabled(mfa, seeded_store, fail_writes) -> None:
    fail_writes(seeded_store, "MFAStatus")
    secret = pyotp.random_base32(32)

    with pytest.raises(PartialApplyError) as exc_info:
        mfa.bind(pyotp.TOTP(secret).now(), 30, secret)

    assert exc_info.value.committed == 2
    assert seeded_store.get(SettingKey.MFA_SECRET) == secret
    assert not mfa.enabled()


def test_status_without_secret_is_not_enabled() -> None:
    assert not is_enabled({"MFAStatus": "enable", "MFASecret": "", "MFAInterval": "30"})
    assert not is_enabled({"MFAStatus": "enable", "MFASecret": "JBSWY3DPEHPK3PXP", "MFAInterval": "0"})
    assert is_enabled({"MFAStatus": "enable", "MFASecret": "JBSWY3DPEHPK3PXP", "MFAInterval": "30"})
