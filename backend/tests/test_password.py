"""
Password change, complexity policy and expiry handling.
"""

from datetime import datetime, timedelta

import pytest

from panelcore.models.setting import SettingKey
from panelcore.services.errors import InvalidOldPassword, PolicyViolation, ValidationError
from panelcore.services.password import TIME_FORMAT, PasswordPolicy, PasswordService

from conftest import ADMIN_PASSWORD

NOW = datetime(2026, 1, 10, 12, 0, 0)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def passwords(seeded_store, clock) -> PasswordService:
    return PasswordService(seeded_store, PasswordPolicy(), clock=clock)


def test_change_password(passwords) -> None:
    passwords.change_password(ADMIN_PASSWORD, "N3w-Secret")
    assert passwords.check("N3w-Secret")
    assert not passwords.check(ADMIN_PASSWORD)


def test_wrong_old_password_leaves_hash_unchanged(passwords, seeded_store) -> None:
    before = seeded_store.get(SettingKey.PASSWORD)
    with pytest.raises(InvalidOldPassword):
        passwords.change_password("not-the-password", "N3w-Secret")
    assert seeded_store.get(SettingKey.PASSWORD) == before


@pytest.mark.parametrize("new", ["Ab1", "abcdefghij", "has space 1A", "x" * 31 + "A1"])
def test_policy_violations(passwords, new) -> None:
    with pytest.raises(PolicyViolation):
        passwords.change_password(ADMIN_PASSWORD, new)


def test_complexity_can_be_disabled(passwords, seeded_store) -> None:
    seeded_store.set(SettingKey.COMPLEXITY_VERIFICATION, "disable")
    passwords.change_password(ADMIN_PASSWORD, "abcdefghij")
    assert passwords.check("abcdefghij")


def test_new_password_must_differ(passwords) -> None:
    with pytest.raises(PolicyViolation):
        passwords.change_password(ADMIN_PASSWORD, ADMIN_PASSWORD)


def test_expiration_days_sets_expiry(passwords, seeded_store) -> None:
    passwords.update_expiration_days("30")
    assert seeded_store.get(SettingKey.EXPIRATION_DAYS) == "30"
    assert seeded_store.get(SettingKey.PASSWORD_EXPIRE_AT) == (NOW + timedelta(days=30)).strftime(TIME_FORMAT)

    passwords.update_expiration_days(0)
    assert seeded_store.get(SettingKey.PASSWORD_EXPIRE_AT) == ""
    assert not passwords.is_expired(NOW + timedelta(days=365))


@pytest.mark.parametrize("value", ["-1", "soon"])
def test_expiration_days_validation(passwords, value) -> None:
    with pytest.raises(ValidationError):
        passwords.update_expiration_days(value)


def test_handle_expired_requires_expired_password(passwords) -> None:
    passwords.update_expiration_days(10)
    with pytest.raises(ValidationError, match="not expired"):
        passwords.handle_expired(ADMIN_PASSWORD, "N3w-Secret")


def test_handle_expired_resets_and_extends(passwords, seeded_store, clock) -> None:
    passwords.update_expiration_days(10)
    clock.now = NOW + timedelta(days=11)
    assert passwords.is_expired()

    passwords.handle_expired(ADMIN_PASSWORD, "N3w-Secret")

    assert passwords.check("N3w-Secret")
    assert not passwords.is_expired()
    assert passwords.expire_at() == clock.now.replace(microsecond=0) + timedelta(days=10)


def test_credential_state(passwords) -> None:
    state = passwords.credential_state()
    assert state.password_hash.startswith("$2")
    assert state.password_expire_at is None
    assert state.mfa_status == "disable"
    assert not state.mfa_enabled
