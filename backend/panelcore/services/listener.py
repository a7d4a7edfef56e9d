"""
Panel Listener - the running server's listening socket and TLS context.

This object is the single owner of the live listener configuration. Changes
are always built on the side (a new socket, a new SSLContext) and then
swapped in; ``lock`` must be held across validate -> apply -> persist by any
caller that changes it.
"""
import logging
import socket
import ssl
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import ReapplyFailed

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG = 128
PROBE_TIMEOUT = 3.0


@dataclass(frozen=True)
class Binding:
    address: str
    port: int
    ipv6: bool = False

    @property
    def family(self) -> int:
        return socket.AF_INET6 if self.ipv6 else socket.AF_INET

    @property
    def is_wildcard(self) -> bool:
        return self.address in ("", "0.0.0.0", "::")

    def __str__(self):
        host = f"[{self.address}]" if ":" in self.address else self.address
        return f"{host}:{self.port}"


def bind_socket(binding: Binding, backlog: int = DEFAULT_BACKLOG) -> socket.socket:
    """Create a listening socket for ``binding``. Raises OSError on failure."""
    sock = socket.socket(binding.family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        # Lets the replacement listener share the port with the one it replaces.
        if hasattr(socket, "SO_REUSEPORT"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        if binding.ipv6 and binding.is_wildcard:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        address = binding.address or ("::" if binding.ipv6 else "0.0.0.0")
        sock.bind((address, binding.port))
        sock.listen(backlog)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def build_ssl_context(cert_path: str, key_path: str) -> ssl.SSLContext:
    """Server-side TLS context for a certificate/key pair. Raises ssl.SSLError or OSError."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(certfile=cert_path, keyfile=key_path)
    return ctx


def probe(binding: Binding, timeout: float = PROBE_TIMEOUT) -> bool:
    """TCP connect check against a binding (wildcards are probed on loopback)."""
    if binding.is_wildcard:
        host = "::1" if binding.ipv6 else "127.0.0.1"
    else:
        host = binding.address
    try:
        with socket.create_connection((host, binding.port), timeout=timeout):
            return True
    except OSError:
        return False


class PanelListener:
    """Listening socket + TLS context currently serving the panel.

    An attached runner (see ``panelcore.server``) is told about every swap so
    it can start serving the new socket/context and drain the old one. Without
    a runner the listener only tracks state, which is what the tests use.
    """

    def __init__(self, binding: Binding, backlog: int = DEFAULT_BACKLOG):
        self.lock = threading.RLock()
        self.binding = binding
        self.backlog = backlog
        self._sock: Optional[socket.socket] = None
        self._ssl_context: Optional[ssl.SSLContext] = None
        self._runner = None

    @property
    def sock(self) -> Optional[socket.socket]:
        return self._sock

    @property
    def ssl_context(self) -> Optional[ssl.SSLContext]:
        return self._ssl_context

    @property
    def tls_enabled(self) -> bool:
        return self._ssl_context is not None

    def open(self) -> None:
        """Bind the configured address. A TLS context loaded beforehand is kept."""
        with self.lock:
            self._sock = bind_socket(self.binding, self.backlog)
            if self.binding.port == 0:
                self.binding = Binding(self.binding.address, self._sock.getsockname()[1], self.binding.ipv6)
            logger.info(f"Listening on {self.binding} ({'https' if self._ssl_context else 'http'})")

    def attach(self, runner) -> None:
        self._runner = runner

    def close(self) -> None:
        with self.lock:
            if self._sock is not None:
                self._sock.close()
                self._sock = None

    # ─────────────────────────────────────────────────────────── TLS ──────────

    def reload_tls(self, cert_path: str, key_path: str) -> None:
        """Serve new connections with the pair at ``cert_path``/``key_path``."""
        with self.lock:
            try:
                ctx = build_ssl_context(cert_path, key_path)
            except (ssl.SSLError, OSError) as e:
                logger.error(f"TLS reload failed: {e}")
                raise ReapplyFailed(f"TLS reload failed: {e}") from e
            self._activate(self._sock, ctx)
            self._ssl_context = ctx
            logger.info("TLS configuration reloaded")

    def disable_tls(self) -> None:
        with self.lock:
            self._activate(self._sock, None)
            self._ssl_context = None
            logger.info("TLS disabled, serving plain http")

    # ─────────────────────────────────────────────────────────── binding ──────

    def swap(self, sock: socket.socket, binding: Binding) -> Tuple[Optional[socket.socket], Binding]:
        """Make ``sock`` the active listener. Returns the previous (socket, binding).

        The previous socket is left open so the caller can swap back; it must
        be released with ``release`` once the change is final.
        """
        with self.lock:
            self._activate(sock, self._ssl_context)
            previous = (self._sock, self.binding)
            self._sock = sock
            self.binding = binding
            logger.info(f"Active listener swapped {previous[1]} -> {binding}")
            return previous

    @staticmethod
    def release(sock: Optional[socket.socket]) -> None:
        if sock is not None:
            sock.close()

    def _activate(self, sock: Optional[socket.socket], ctx: Optional[ssl.SSLContext]) -> None:
        if self._runner is None or sock is None:
            return
        try:
            self._runner.switch(sock, ctx)
        except Exception as e:
            logger.error(f"Runner failed to take over listener: {e}")
            raise ReapplyFailed(f"failed to apply listener change: {e}") from e
