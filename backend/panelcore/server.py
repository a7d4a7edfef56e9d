"""
Live server runner - serves the FastAPI app on the PanelListener's socket.

uvicorn is started with pre-bound sockets so the listener, not uvicorn, owns
the address. A swap starts a second uvicorn server on the new socket (or a
duplicate of the current one, for TLS changes) and only then asks the old
server to exit; in-flight requests on the old server finish normally.
"""
import asyncio
import logging
import socket
import ssl
import threading
import time
from typing import Optional

import uvicorn

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 10.0


class UvicornRunner:

    def __init__(self, app, loop: asyncio.AbstractEventLoop, log_level: str = "info"):
        self.app = app
        self.loop = loop
        self.log_level = log_level
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None
        self._swap_lock = threading.Lock()

    def _make_server(self, ssl_context: Optional[ssl.SSLContext]) -> uvicorn.Server:
        config = uvicorn.Config(
            self.app,
            log_level=self.log_level,
            log_config=None,  # keep the process-wide logging setup
            lifespan="off",  # app startup already ran on the first server
            timeout_graceful_shutdown=30,
        )
        config.load()
        config.ssl = ssl_context
        return uvicorn.Server(config)

    def start(self, sock: socket.socket, ssl_context: Optional[ssl.SSLContext]) -> None:
        """Serve the first socket. Must be called from the event loop thread."""
        server = self._make_server(ssl_context)
        self._server = server
        self._task = self.loop.create_task(server.serve(sockets=[sock.dup()]))

    def switch(self, sock: socket.socket, ssl_context: Optional[ssl.SSLContext]) -> None:
        """Move serving to ``sock``/``ssl_context``. Called from a worker thread.

        Raises RuntimeError if the new server does not come up; the old one
        is untouched in that case.
        """
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            raise RuntimeError("switch() must not run on the event loop thread")

        with self._swap_lock:
            server = self._make_server(ssl_context)
            future = asyncio.run_coroutine_threadsafe(self._launch(server, sock.dup()), self.loop)
            task = future.result(timeout=STARTUP_TIMEOUT)

            deadline = time.monotonic() + STARTUP_TIMEOUT
            while not server.started:
                if task.done():
                    raise RuntimeError("new server exited during startup")
                if time.monotonic() > deadline:
                    server.should_exit = True
                    raise RuntimeError("new server did not start in time")
                time.sleep(0.02)

            old, self._server = self._server, server
            self._task = task
            if old is not None:
                old.should_exit = True
            logger.info("Serving on the new listener, draining the previous one")

    @property
    def started(self) -> bool:
        return self._server is not None and self._server.started

    def stop(self) -> None:
        """Ask the current server to exit; ``wait`` returns once it has."""
        if self._server is not None:
            self._server.should_exit = True

    async def _launch(self, server: uvicorn.Server, sock: socket.socket) -> asyncio.Task:
        return asyncio.create_task(server.serve(sockets=[sock]))

    async def wait(self) -> None:
        """Return once the current server exits without having been replaced."""
        while True:
            task = self._task
            if task is None:
                return
            await task
            if task is self._task:
                return
