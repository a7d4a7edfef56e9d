"""
Pytest fixtures: isolated settings store, live listener, wired service, test client.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import socket
from typing import Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from panelcore.config import settings
from panelcore.database import Base
from panelcore.main import create_app
from panelcore.models.setting import Setting  # noqa: F401
from panelcore.services.certificate import generate_self_signed
from panelcore.services.errors import StoreError
from panelcore.services.listener import Binding, PanelListener
from panelcore.services.settings_service import SettingsService, build_settings_service
from panelcore.services.settings_store import SettingsStore, init_default_settings
from panelcore.utils.security import get_password_hash

ADMIN_PASSWORD = "admin@Panel1"
LOCAL_ADDRESSES = ["127.0.0.1", "::1"]


@pytest.fixture
def cfg(tmp_path):
    return settings.model_copy(update={
        "SECRET_DIR": str(tmp_path / "secret"),
        "TLS_KEY_SIZE": 2048,
    })


@pytest.fixture
def store() -> SettingsStore:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield SettingsStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    engine.dispose()


@pytest.fixture
def seeded_store(store, cfg) -> SettingsStore:
    init_default_settings(store, cfg, password_hash=get_password_hash(ADMIN_PASSWORD))
    return store


@pytest.fixture
def listener() -> PanelListener:
    """Listener on a free loopback port, with no runner attached."""
    lst = PanelListener(Binding("127.0.0.1", 0))
    lst.open()
    yield lst
    lst.close()


@pytest.fixture
def service(seeded_store, listener, cfg) -> SettingsService:
    seeded_store.set("ServerPort", str(listener.binding.port))
    seeded_store.set("BindAddress", listener.binding.address)
    svc = build_settings_service(seeded_store, listener, cfg)
    svc.binding.interfaces = lambda: list(LOCAL_ADDRESSES)
    return svc


@pytest.fixture
def client(service, cfg) -> TestClient:
    return TestClient(create_app(service, cfg))


@pytest.fixture
def cert_pair() -> Callable:
    """Factory for (cert_pem, key_pem) self-signed pairs."""
    def make(hostname: str = "panel.test", days: int = 30):
        return generate_self_signed(hostname, ["127.0.0.1"], days=days, key_size=2048)
    return make


@pytest.fixture
def fail_writes(monkeypatch):
    """Make ``store.set`` raise StoreError for the given keys.

    ``times`` limits how many writes fail before the store behaves again.
    """
    def arm(store: SettingsStore, *keys: str, times: int = None):
        original = store.set
        remaining = {"count": times}

        def set_(key, value):
            name = key.value if hasattr(key, "value") else str(key)
            if name in keys and remaining["count"] != 0:
                if remaining["count"] is not None:
                    remaining["count"] -= 1
                raise StoreError(f"failed to write setting {name}")
            return original(key, value)

        monkeypatch.setattr(store, "set", set_)
    return arm


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
