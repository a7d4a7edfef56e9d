"""
Live apply through the uvicorn runner: port and TLS changes without a restart.
"""

import asyncio
import threading
import time

import httpx
import pytest

from panelcore.main import create_app
from panelcore.server import UvicornRunner
from panelcore.services.listener import Binding, probe

PREFIX = "/api/v2/core/settings"


def wait_until(condition, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            pytest.fail("condition not reached in time")
        time.sleep(0.05)


def https_ok(port: int) -> bool:
    try:
        return httpx.get(f"https://127.0.0.1:{port}/health", verify=False, timeout=2).status_code == 200
    except httpx.HTTPError:
        return False


@pytest.fixture
def runner(service, listener, cfg):
    """The app served by a UvicornRunner on the listener, in a background event loop."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()

    runner = UvicornRunner(create_app(service, cfg), loop, "warning")
    listener.attach(runner)
    loop.call_soon_threadsafe(runner.start, listener.sock, listener.ssl_context)
    wait_until(lambda: runner.started)

    yield runner

    runner.stop()
    asyncio.run_coroutine_threadsafe(runner.wait(), loop).result(timeout=40)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


def test_serves_on_listener(runner, listener) -> None:
    r = httpx.get(f"http://127.0.0.1:{listener.binding.port}/health")
    assert r.status_code == 200


def test_port_change_applies_without_restart(runner, listener, seeded_store, free_port) -> None:
    old_port = listener.binding.port

    r = httpx.post(
        f"http://127.0.0.1:{old_port}{PREFIX}/port/update",
        json={"serverPort": free_port},
        timeout=30,
    )
    assert r.status_code == 200

    assert httpx.get(f"http://127.0.0.1:{free_port}/health").status_code == 200
    wait_until(lambda: not probe(Binding("127.0.0.1", old_port), timeout=0.5))
    assert seeded_store.get("ServerPort") == str(free_port)


def test_tls_enable_applies_without_restart(runner, listener) -> None:
    port = listener.binding.port

    r = httpx.post(
        f"http://127.0.0.1:{port}{PREFIX}/ssl/update",
        json={"ssl": "enable", "sslType": "self", "domain": "panel.test"},
        timeout=60,
    )
    assert r.status_code == 200

    wait_until(lambda: https_ok(port))
    assert listener.tls_enabled


def test_failed_port_change_keeps_serving(runner, listener) -> None:
    port = listener.binding.port
    r = httpx.post(f"http://127.0.0.1:{port}{PREFIX}/port/update", json={"serverPort": port + 70000})
    assert r.status_code == 400
    assert httpx.get(f"http://127.0.0.1:{port}/health").status_code == 200
