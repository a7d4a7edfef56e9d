"""
Settings Service - the only entry point the API layer calls.

``update(key, value)`` dispatches over the SettingKey catalog: keys that
drive live resources or credentials go to their dedicated service, keys
with simple value rules are validated here, and keys outside the catalog
are stored as given.
"""
import logging
from typing import Callable, Dict, List, Optional

from ..models.setting import DISABLE, ENABLE, SettingKey
from .binding import BindingService, local_addresses, parse_flag
from .certificate import CertificateInfo, CertificateService, SourceKind
from .errors import InvalidCertificate, ValidationError
from .mfa import MFAService, Otp
from .password import CredentialState, PasswordPolicy, PasswordService
from .proxy import ProxyService
from .settings_store import SettingsStore, apply_sequence

logger = logging.getLogger(__name__)

# Never returned by get_setting_info
_HIDDEN_KEYS = {SettingKey.PASSWORD.value, SettingKey.MFA_SECRET.value, SettingKey.PROXY_PASSWD.value}

_CURSOR_STYLES = ("block", "underline", "bar")


def _number(kind, low, high):
    def check(key: str, value: str) -> str:
        try:
            parsed = kind(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be a number, got {value!r}")
        if not low <= parsed <= high:
            raise ValidationError(f"{key} must be between {low} and {high}")
        return str(parsed)
    return check


def _flag(key: str, value: str) -> str:
    return ENABLE if parse_flag(value) else DISABLE


def _choice(*options):
    def check(key: str, value: str) -> str:
        if value not in options:
            raise ValidationError(f"{key} must be one of {', '.join(options)}")
        return value
    return check


TERMINAL_RULES: Dict[SettingKey, Callable[[str, str], str]] = {
    SettingKey.LINE_HEIGHT: _number(float, 1.0, 2.0),
    SettingKey.LETTER_SPACING: _number(float, 0, 10),
    SettingKey.FONT_SIZE: _number(int, 8, 48),
    SettingKey.CURSOR_BLINK: _flag,
    SettingKey.CURSOR_STYLE: _choice(*_CURSOR_STYLES),
    SettingKey.SCROLLBACK: _number(int, 0, 100000),
    SettingKey.SCROLL_SENSITIVITY: _number(int, 1, 100),
}

_VALUE_RULES: Dict[SettingKey, Callable[[str, str], str]] = {
    SettingKey.SESSION_TIMEOUT: _number(int, 300, 30 * 86400),
    SettingKey.COMPLEXITY_VERIFICATION: _flag,
    SettingKey.LANGUAGE: _choice("en", "zh", "zh-Hant", "ja", "ko", "ru", "ms", "pt-BR", "tr", "es-ES"),
    SettingKey.THEME: _choice("light", "dark", "auto"),
    **TERMINAL_RULES,
}


class SettingsService:

    def __init__(self, store: SettingsStore, passwords: PasswordService, mfa: MFAService,
                 certificates: CertificateService, binding: BindingService, proxy: ProxyService):
        self.store = store
        self.passwords = passwords
        self.mfa = mfa
        self.certificates = certificates
        self.binding = binding
        self.proxy = proxy

        self._handlers: Dict[SettingKey, Callable[[str], None]] = {
            SettingKey.SERVER_PORT: self.binding.update_port,
            SettingKey.BIND_ADDRESS: self._update_bind_address,
            SettingKey.IPV6: self._update_ipv6,
            SettingKey.MFA_STATUS: self._update_mfa_status,
            SettingKey.MFA_SECRET: self._refuse("use MFA bind to change the secret"),
            SettingKey.MFA_INTERVAL: self._refuse("use MFA bind to change the interval"),
            SettingKey.PASSWORD: self._refuse("use the password update operation"),
            SettingKey.PASSWORD_EXPIRE_AT: self._refuse("derived from ExpirationDays"),
            SettingKey.EXPIRATION_DAYS: self.passwords.update_expiration_days,
            SettingKey.SSL: self._update_ssl_status,
            SettingKey.SSL_TYPE: self._refuse("use the ssl update operation"),
        }
        for key in (SettingKey.PROXY_TYPE, SettingKey.PROXY_URL, SettingKey.PROXY_PORT,
                    SettingKey.PROXY_USER, SettingKey.PROXY_PASSWD, SettingKey.PROXY_PASSWD_KEEP):
            self._handlers[key] = self._refuse("use the proxy update operation")

    # ─────────────────────────────────────────────────────────── generic ──────

    def get_setting_info(self) -> Dict[str, str]:
        values = self.store.all()
        info = {k: v for k, v in values.items() if k not in _HIDDEN_KEYS}
        proxy = self.proxy.get()
        info[SettingKey.PROXY_PASSWD.value] = proxy.passwd if proxy.passwd_keep else ""
        info["MFAEnabled"] = ENABLE if self.mfa.enabled() else DISABLE
        return info

    def update(self, key: str, value: str) -> None:
        if not key:
            raise ValidationError("setting key is required")
        value = "" if value is None else str(value)
        member = SettingKey.lookup(key)
        if member is None:
            logger.debug(f"Storing uncatalogued setting {key}")
            self.store.set(key, value)
            return

        handler = self._handlers.get(member)
        if handler is not None:
            handler(value)
        else:
            rule = _VALUE_RULES.get(member)
            self.store.set(member, rule(member.value, value.strip()) if rule else value)
        logger.info(f"Setting {member.value} updated")

    def update_menu(self, value: str) -> None:
        self.update(SettingKey.HIDE_MENU.value, value)

    def get_terminal_info(self) -> Dict[str, str]:
        values = self.store.get_many(TERMINAL_RULES)
        return {key.value: values.get(key.value, "") for key in TERMINAL_RULES}

    def update_terminal(self, values: Dict[str, str]) -> None:
        writes = []
        for name, raw in values.items():
            member = SettingKey.lookup(name)
            if member not in TERMINAL_RULES:
                raise ValidationError(f"{name} is not a terminal setting")
            writes.append((member, TERMINAL_RULES[member](name, str(raw).strip())))
        apply_sequence(self.store, writes, operation="terminal update")
        logger.info(f"Terminal settings updated ({len(writes)} keys)")

    # ─────────────────────────────────────────────────────────── password ─────

    def update_password(self, old: str, new: str) -> None:
        self.passwords.change_password(old, new)

    def handle_password_expired(self, old: str, new: str) -> None:
        self.passwords.handle_expired(old, new)

    def credential_state(self) -> CredentialState:
        return self.passwords.credential_state()

    # ─────────────────────────────────────────────────────────── mfa ──────────

    def load_mfa(self, title: str, interval) -> Otp:
        return self.mfa.load(title, interval)

    def bind_mfa(self, code: str, interval, secret: str) -> None:
        self.mfa.bind(code, interval, secret)

    def unbind_mfa(self) -> None:
        self.mfa.unbind()

    # ─────────────────────────────────────────────────────────── ssl ──────────

    def update_ssl(self, ssl: str, ssl_type: str = SourceKind.SELF_SIGNED.value,
                   cert: str = "", key: str = "", domain: str = "") -> Optional[CertificateInfo]:
        if not parse_flag(ssl):
            self.certificates.disable()
            return None
        if ssl_type == SourceKind.IMPORTED.value:
            return self.certificates.load_from_user_certificate(cert, key)
        if ssl_type != SourceKind.SELF_SIGNED.value:
            raise ValidationError(f"unsupported SSL type: {ssl_type!r}")
        current = self.store.get_or_default(SettingKey.SSL_TYPE, SourceKind.SELF_SIGNED.value)
        if not domain and current == SourceKind.SELF_SIGNED.value and self.certificates.has_certificate():
            try:
                return self.certificates.enable()
            except InvalidCertificate as e:
                logger.warning(f"Existing self-signed certificate unusable ({e.message}), regenerating")
        return self.certificates.generate(domain)

    def load_from_cert(self) -> CertificateInfo:
        return self.certificates.describe_certificate()

    def download_ssl(self) -> bytes:
        return self.certificates.export_certificate()

    # ─────────────────────────────────────────────────────────── binding ──────

    def load_interface_addr(self) -> List[str]:
        return local_addresses()

    def update_bind_info(self, ipv6, bind_address: str) -> None:
        self.binding.update_bind_info(ipv6, bind_address)

    def update_port(self, port) -> None:
        self.binding.update_port(port)

    # ─────────────────────────────────────────────────────────── proxy ────────

    def update_proxy(self, proxy_type: str, url: str = "", port="", user: str = "",
                     passwd: str = "", passwd_keep=False) -> None:
        self.proxy.update(proxy_type, url, port, user, passwd, passwd_keep)

    # ─────────────────────────────────────────────────────────── dispatch ─────

    def _update_bind_address(self, value: str) -> None:
        current = self.binding.current()
        self.binding.update_binding(value, current.port, current.ipv6)

    def _update_ipv6(self, value: str) -> None:
        current = self.binding.current()
        self.binding.update_bind_info(value, current.address)

    def _update_mfa_status(self, value: str) -> None:
        if parse_flag(value):
            raise ValidationError("MFA is enabled by binding a verification code")
        self.mfa.unbind()

    def _update_ssl_status(self, value: str) -> None:
        kind = self.store.get_or_default(SettingKey.SSL_TYPE, SourceKind.SELF_SIGNED.value)
        if parse_flag(value) and kind == SourceKind.IMPORTED.value and self.certificates.has_certificate():
            # An imported pair is re-enabled as is, never silently replaced
            self.certificates.enable()
            return
        self.update_ssl(value, SourceKind.SELF_SIGNED.value)

    @staticmethod
    def _refuse(reason: str) -> Callable[[str], None]:
        def handler(value: str) -> None:
            raise ValidationError(reason)
        return handler


def build_settings_service(store: SettingsStore, listener, cfg) -> SettingsService:
    """Wire the settings services from process configuration."""
    return SettingsService(
        store=store,
        passwords=PasswordService(store, PasswordPolicy.from_settings(cfg)),
        mfa=MFAService(store, account=cfg.MFA_ACCOUNT, valid_window=cfg.MFA_VALID_WINDOW),
        certificates=CertificateService(
            store, listener, cfg.SECRET_DIR,
            key_size=cfg.TLS_KEY_SIZE, cert_days=cfg.TLS_CERT_DAYS,
        ),
        binding=BindingService(
            store, listener,
            min_unprivileged_port=cfg.MIN_UNPRIVILEGED_PORT,
            permitted_ports=cfg.PERMITTED_PRIVILEGED_PORTS,
        ),
        proxy=ProxyService(store, cfg.SECRET_KEY),
    )
