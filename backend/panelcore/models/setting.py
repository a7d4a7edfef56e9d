"""
Settings Model - panel key/value configuration
"""
from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func
import enum

from ..database import Base


class SettingKey(str, enum.Enum):
    """Known configuration keys"""
    # Panel
    USER_NAME = "UserName"
    PANEL_NAME = "PanelName"
    LANGUAGE = "Language"
    THEME = "Theme"
    SESSION_TIMEOUT = "SessionTimeout"
    HIDE_MENU = "HideMenu"

    # Credentials
    PASSWORD = "Password"
    EXPIRATION_DAYS = "ExpirationDays"
    PASSWORD_EXPIRE_AT = "PasswordExpireAt"
    COMPLEXITY_VERIFICATION = "ComplexityVerification"

    # MFA
    MFA_STATUS = "MFAStatus"
    MFA_SECRET = "MFASecret"
    MFA_INTERVAL = "MFAInterval"

    # Listener
    SERVER_PORT = "ServerPort"
    BIND_ADDRESS = "BindAddress"
    IPV6 = "Ipv6"
    SSL = "SSL"
    SSL_TYPE = "SSLType"

    # Outbound proxy
    PROXY_TYPE = "ProxyType"
    PROXY_URL = "ProxyUrl"
    PROXY_PORT = "ProxyPort"
    PROXY_USER = "ProxyUser"
    PROXY_PASSWD = "ProxyPasswd"
    PROXY_PASSWD_KEEP = "ProxyPasswdKeep"

    # Terminal
    LINE_HEIGHT = "LineHeight"
    LETTER_SPACING = "LetterSpacing"
    FONT_SIZE = "FontSize"
    CURSOR_BLINK = "CursorBlink"
    CURSOR_STYLE = "CursorStyle"
    SCROLLBACK = "Scrollback"
    SCROLL_SENSITIVITY = "ScrollSensitivity"

    @classmethod
    def lookup(cls, key: str):
        """Return the member for ``key`` or None for keys outside the catalog."""
        try:
            return cls(key)
        except ValueError:
            return None


ENABLE = "enable"
DISABLE = "disable"


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String(64), primary_key=True, index=True)
    value = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Setting {self.key}>"
