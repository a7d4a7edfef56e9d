"""
Settings Store - transactional key/value access to the settings table.

Every write is its own transaction. There is no multi-key commit: composite
updates go through ``apply_sequence``, which stops at the first failed write
and reports how many writes were already committed.
"""
import logging
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..database import SessionLocal, get_db_context
from ..models.setting import Setting, SettingKey
from .errors import NotFoundError, PartialApplyError, StoreError

logger = logging.getLogger(__name__)


def _key_name(key) -> str:
    return key.value if isinstance(key, SettingKey) else str(key)


class SettingsStore:
    """Key -> string mapping backed by the ``settings`` table."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or SessionLocal
        # Global write serialization; reads go straight to the database.
        self._lock = threading.RLock()

    def get(self, key) -> str:
        name = _key_name(key)
        try:
            with get_db_context(self._session_factory) as db:
                row = db.get(Setting, name)
                value = row.value if row else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read setting {name}: {e}")
            raise StoreError(f"failed to read setting {name}") from e
        if value is None:
            raise NotFoundError(f"setting {name} not found")
        return value

    def get_or_default(self, key, default: str = "") -> str:
        try:
            return self.get(key)
        except NotFoundError:
            return default

    def get_many(self, keys: Iterable) -> Dict[str, str]:
        """Return the current values of ``keys``; missing keys are omitted."""
        names = [_key_name(k) for k in keys]
        if not names:
            return {}
        try:
            with get_db_context(self._session_factory) as db:
                rows = db.query(Setting).filter(Setting.key.in_(names)).all()
                return {row.key: row.value for row in rows}
        except SQLAlchemyError as e:
            logger.error(f"Failed to read settings {names}: {e}")
            raise StoreError("failed to read settings") from e

    def all(self) -> Dict[str, str]:
        try:
            with get_db_context(self._session_factory) as db:
                return {row.key: row.value for row in db.query(Setting).all()}
        except SQLAlchemyError as e:
            logger.error(f"Failed to list settings: {e}")
            raise StoreError("failed to list settings") from e

    def set(self, key, value: str) -> None:
        """Upsert a single key. Writing the current value again is a no-op."""
        name = _key_name(key)
        value = "" if value is None else str(value)
        with self._lock:
            try:
                with get_db_context(self._session_factory) as db:
                    row = db.get(Setting, name)
                    if row is None:
                        db.add(Setting(key=name, value=value))
                    elif row.value != value:
                        row.value = value
            except SQLAlchemyError as e:
                logger.error(f"Failed to write setting {name}: {e}")
                raise StoreError(f"failed to write setting {name}") from e
        logger.debug(f"Setting {name} updated")

    def seed(self, defaults: Dict[str, str]) -> List[str]:
        """Insert missing keys only. Returns the keys that were created."""
        with self._lock:
            try:
                with get_db_context(self._session_factory) as db:
                    existing = {row.key for row in db.query(Setting.key).all()}
                    created = [k for k in defaults if k not in existing]
                    db.add_all([Setting(key=k, value=defaults[k]) for k in created])
            except SQLAlchemyError as e:
                logger.error(f"Failed to seed default settings: {e}")
                raise StoreError("failed to seed default settings") from e
        return created


def apply_sequence(store: SettingsStore, writes: Sequence[Tuple[object, str]],
                   operation: str = "update") -> None:
    """Apply ``writes`` in order as independent single-key transactions.

    The first failure stops the sequence. Nothing already written is undone:
    if at least one write committed, a PartialApplyError names the committed
    keys; if none did, the StoreError is raised unchanged.
    """
    committed: List[str] = []
    for key, value in writes:
        name = _key_name(key)
        try:
            store.set(name, value)
        except StoreError as e:
            if not committed:
                raise
            logger.error(
                f"{operation}: stopped at {name} after {len(committed)}/{len(writes)} writes "
                f"(committed: {', '.join(committed)})"
            )
            raise PartialApplyError(
                f"{operation} applied {len(committed)} of {len(writes)} changes; "
                f"failed at {name}: {e.message}",
                committed=len(committed),
                total=len(writes),
                committed_keys=committed,
                failed_key=name,
            ) from e
        committed.append(name)


def default_settings(cfg) -> Dict[str, str]:
    """First-start values for every catalog key except the password hash."""
    return {
        # Panel
        SettingKey.USER_NAME.value: cfg.INITIAL_ADMIN_USERNAME,
        SettingKey.PANEL_NAME.value: cfg.PANEL_NAME,
        SettingKey.LANGUAGE.value: "en",
        SettingKey.THEME.value: "light",
        SettingKey.SESSION_TIMEOUT.value: "86400",
        SettingKey.HIDE_MENU.value: "",

        # Credentials
        SettingKey.EXPIRATION_DAYS.value: str(cfg.DEFAULT_PASSWORD_EXPIRATION_DAYS),
        SettingKey.PASSWORD_EXPIRE_AT.value: "",
        SettingKey.COMPLEXITY_VERIFICATION.value: "enable",

        # MFA - status is the commit flag, starts disabled
        SettingKey.MFA_STATUS.value: "disable",
        SettingKey.MFA_SECRET.value: "",
        SettingKey.MFA_INTERVAL.value: str(cfg.MFA_DEFAULT_INTERVAL),

        # Listener
        SettingKey.SERVER_PORT.value: str(cfg.DEFAULT_SERVER_PORT),
        SettingKey.BIND_ADDRESS.value: cfg.DEFAULT_BIND_ADDRESS,
        SettingKey.IPV6.value: "disable",
        SettingKey.SSL.value: "disable",
        SettingKey.SSL_TYPE.value: "self",

        # Outbound proxy
        SettingKey.PROXY_TYPE.value: "close",
        SettingKey.PROXY_URL.value: "",
        SettingKey.PROXY_PORT.value: "",
        SettingKey.PROXY_USER.value: "",
        SettingKey.PROXY_PASSWD.value: "",
        SettingKey.PROXY_PASSWD_KEEP.value: "disable",

        # Terminal (xterm.js options)
        SettingKey.LINE_HEIGHT.value: "1.2",
        SettingKey.LETTER_SPACING.value: "0",
        SettingKey.FONT_SIZE.value: "12",
        SettingKey.CURSOR_BLINK.value: "enable",
        SettingKey.CURSOR_STYLE.value: "block",
        SettingKey.SCROLLBACK.value: "1000",
        SettingKey.SCROLL_SENSITIVITY.value: "6",
    }


def init_default_settings(store: SettingsStore, cfg, password_hash: Optional[str] = None) -> List[str]:
    """Seed missing keys, including the initial admin password hash."""
    defaults = default_settings(cfg)
    if password_hash is not None:
        defaults[SettingKey.PASSWORD.value] = password_hash
    created = store.seed(defaults)
    if created:
        logger.info(f"Seeded {len(created)} default settings")
    return created
