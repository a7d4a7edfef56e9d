"""
Proxy Service - outbound proxy used by the panel for downloads and API calls.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import quote

from ..models.setting import DISABLE, ENABLE, SettingKey
from ..utils.security import decrypt_field, encrypt_field
from .binding import parse_flag, parse_port
from .errors import ValidationError
from .settings_store import SettingsStore, apply_sequence

logger = logging.getLogger(__name__)

PROXY_CLOSE = "close"
PROXY_TYPES = (PROXY_CLOSE, "http", "https", "socks5")

_KEYS = (
    SettingKey.PROXY_TYPE, SettingKey.PROXY_URL, SettingKey.PROXY_PORT,
    SettingKey.PROXY_USER, SettingKey.PROXY_PASSWD, SettingKey.PROXY_PASSWD_KEEP,
)


@dataclass
class ProxyConfig:
    proxy_type: str = PROXY_CLOSE
    url: str = ""
    port: str = ""
    user: str = ""
    passwd: str = ""
    passwd_keep: bool = False

    @property
    def enabled(self) -> bool:
        return self.proxy_type != PROXY_CLOSE and bool(self.url)

    def to_dict(self, include_password: bool = False) -> Dict[str, str]:
        return {
            "proxyType": self.proxy_type,
            "proxyUrl": self.url,
            "proxyPort": self.port,
            "proxyUser": self.user,
            "proxyPasswd": self.passwd if include_password else "",
            "proxyPasswdKeep": ENABLE if self.passwd_keep else DISABLE,
        }


class ProxyService:

    def __init__(self, store: SettingsStore, secret_key: Optional[str] = None):
        self.store = store
        self.secret_key = secret_key

    def get(self) -> ProxyConfig:
        values = self.store.get_many(_KEYS)
        encrypted = values.get(SettingKey.PROXY_PASSWD.value, "")
        try:
            passwd = decrypt_field(encrypted, self.secret_key)
        except ValueError:
            logger.warning("Stored proxy password cannot be decrypted, ignoring it")
            passwd = ""
        return ProxyConfig(
            proxy_type=values.get(SettingKey.PROXY_TYPE.value, PROXY_CLOSE) or PROXY_CLOSE,
            url=values.get(SettingKey.PROXY_URL.value, ""),
            port=values.get(SettingKey.PROXY_PORT.value, ""),
            user=values.get(SettingKey.PROXY_USER.value, ""),
            passwd=passwd,
            passwd_keep=values.get(SettingKey.PROXY_PASSWD_KEEP.value) == ENABLE,
        )

    def update(self, proxy_type: str, url: str = "", port="", user: str = "",
               passwd: str = "", passwd_keep=False) -> ProxyConfig:
        proxy_type = (proxy_type or PROXY_CLOSE).strip().lower()
        if proxy_type not in PROXY_TYPES:
            raise ValidationError(f"unsupported proxy type: {proxy_type!r}")

        if proxy_type == PROXY_CLOSE:
            # Type first: a partial failure leaves the proxy off
            apply_sequence(self.store, [
                (SettingKey.PROXY_TYPE, PROXY_CLOSE),
                (SettingKey.PROXY_URL, ""),
                (SettingKey.PROXY_PORT, ""),
                (SettingKey.PROXY_USER, ""),
                (SettingKey.PROXY_PASSWD, ""),
                (SettingKey.PROXY_PASSWD_KEEP, DISABLE),
            ], operation="proxy close")
            logger.info("Outbound proxy disabled")
            return ProxyConfig()

        host = self._parse_host(url, proxy_type)
        port_value = str(parse_port(port))
        keep = parse_flag(passwd_keep)
        user = (user or "").strip()
        if passwd and not user:
            raise ValidationError("proxy password given without a user")

        # An active proxy is switched off first and the type written last switches
        # the new values on, so a failure in between leaves the proxy closed.
        writes = []
        if self.store.get_or_default(SettingKey.PROXY_TYPE, PROXY_CLOSE) != PROXY_CLOSE:
            writes.append((SettingKey.PROXY_TYPE, PROXY_CLOSE))
        writes += [
            (SettingKey.PROXY_URL, host),
            (SettingKey.PROXY_PORT, port_value),
            (SettingKey.PROXY_USER, user),
            (SettingKey.PROXY_PASSWD, encrypt_field(passwd or "", self.secret_key)),
            (SettingKey.PROXY_PASSWD_KEEP, ENABLE if keep else DISABLE),
            (SettingKey.PROXY_TYPE, proxy_type),
        ]
        apply_sequence(self.store, writes, operation="proxy update")
        logger.info(f"Outbound proxy set to {proxy_type}://{host}:{port_value}")
        return ProxyConfig(proxy_type, host, port_value, user, passwd or "", keep)

    def proxy_url(self) -> Optional[str]:
        """Proxy URL with credentials, suitable for an HTTP client's ``proxies``."""
        cfg = self.get()
        if not cfg.enabled:
            return None
        auth = ""
        if cfg.user:
            auth = quote(cfg.user, safe="")
            if cfg.passwd:
                auth += ":" + quote(cfg.passwd, safe="")
            auth += "@"
        return f"{cfg.proxy_type}://{auth}{cfg.url}:{cfg.port}"

    @staticmethod
    def _parse_host(url: str, proxy_type: str) -> str:
        host = (url or "").strip()
        prefix = f"{proxy_type}://"
        if host.lower().startswith(prefix):
            host = host[len(prefix):]
        host = host.rstrip("/")
        if not host:
            raise ValidationError("proxy address is required")
        if "://" in host or "/" in host or any(c.isspace() for c in host) or "@" in host:
            raise ValidationError(f"invalid proxy address: {url!r}")
        return host
