"""
Binding Service - change the panel's listen address, port and IP family live.

Phase 1 binds the requested address while the old listener keeps serving.
Only when that succeeds is the new socket swapped in, probed and persisted.
A failure at any point after the swap swaps the old socket back, so the
operator is never locked out by a bad binding change.
"""
import errno
import ipaddress
import logging
import os
import socket
from typing import Callable, Iterable, List, Optional

import psutil

from ..models.setting import DISABLE, ENABLE, SettingKey
from .errors import (
    InvalidAddress,
    PartialApplyError,
    PortInUse,
    ReapplyFailed,
    StoreError,
    ValidationError,
)
from .listener import Binding, PanelListener, bind_socket, probe
from .settings_store import SettingsStore, apply_sequence

logger = logging.getLogger(__name__)


def local_addresses() -> List[str]:
    """IPv4/IPv6 addresses assigned to local interfaces."""
    seen = []
    for entries in psutil.net_if_addrs().values():
        for entry in entries:
            if entry.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            address = entry.address.split("%", 1)[0]
            if address not in seen:
                seen.append(address)
    return seen


def foreign_listeners(port: int) -> List[Optional[int]]:
    """Pids of other processes listening on ``port`` (None where the pid is not visible)."""
    own = os.getpid()
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        logger.debug("Listening sockets cannot be listed, skipping port ownership check")
        return []
    return [
        c.pid for c in connections
        if c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port and c.pid != own
    ]


def parse_port(port) -> int:
    try:
        value = int(str(port).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"invalid port: {port!r}")
    if not 1 <= value <= 65535:
        raise ValidationError(f"port out of range: {value}")
    return value


def parse_flag(value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in (ENABLE, "true", "1"):
        return True
    if text in (DISABLE, "false", "0", ""):
        return False
    raise ValidationError(f"expected enable/disable, got {value!r}")


class BindingService:

    def __init__(self, store: SettingsStore, listener: PanelListener,
                 min_unprivileged_port: int = 1024,
                 permitted_ports: Iterable[int] = (80, 443),
                 interfaces: Callable[[], List[str]] = local_addresses,
                 port_owners: Callable[[int], List[Optional[int]]] = foreign_listeners):
        self.store = store
        self.listener = listener
        self.min_unprivileged_port = min_unprivileged_port
        self.permitted_ports = set(permitted_ports)
        self.interfaces = interfaces
        self.port_owners = port_owners

    def current(self) -> Binding:
        return self.listener.binding

    def update_port(self, port) -> Binding:
        current = self.current()
        return self.update_binding(current.address, parse_port(port), current.ipv6)

    def update_bind_info(self, ipv6, bind_address: str) -> Binding:
        current = self.current()
        return self.update_binding(bind_address, current.port, parse_flag(ipv6))

    def validate(self, address: str, port, ipv6: bool) -> Binding:
        """Normalise and check a requested binding without touching sockets."""
        port = parse_port(port)
        if port < self.min_unprivileged_port and port not in self.permitted_ports:
            raise ValidationError(
                f"port {port} is privileged; allowed below {self.min_unprivileged_port}: "
                f"{sorted(self.permitted_ports)}"
            )

        address = (address or "").strip()
        if address in ("", "0.0.0.0", "::"):
            return Binding("::" if ipv6 else "0.0.0.0", port, ipv6)

        ip = self._resolve(address, ipv6)
        if ip.version == 6 and not ipv6:
            raise InvalidAddress(f"{address} is IPv6 but IPv6 listening is disabled")
        if ip.version == 4 and ipv6:
            raise InvalidAddress(f"{address} is IPv4 but IPv6 listening is enabled")
        if str(ip) not in self.interfaces():
            raise InvalidAddress(f"{address} is not assigned to any local interface")
        return Binding(str(ip), port, ipv6)

    def update_binding(self, address: str, port, ipv6) -> Binding:
        ipv6 = parse_flag(ipv6)
        binding = self.validate(address, port, ipv6)

        with self.listener.lock:
            if binding == self.listener.binding:
                self.persist(binding)
                return binding

            owners = self.port_owners(binding.port)
            if owners:
                logger.warning(f"Port {binding.port} is held by other processes: {owners}")
                raise PortInUse(f"port {binding.port} is already in use")

            # Phase 1: bind alongside the active listener
            try:
                new_sock = bind_socket(binding, self.listener.backlog)
            except OSError as e:
                logger.warning(f"Cannot bind {binding}: {e}")
                if e.errno == errno.EADDRINUSE:
                    raise PortInUse(f"port {binding.port} is already in use") from e
                if e.errno == errno.EADDRNOTAVAIL:
                    raise InvalidAddress(f"{binding.address} is not bindable on this host") from e
                raise ReapplyFailed(f"cannot bind {binding}: {e.strerror or e}") from e

            # Phase 2: swap, check it answers, then persist
            try:
                old_sock, old_binding = self.listener.swap(new_sock, binding)
            except ReapplyFailed:
                self.listener.release(new_sock)
                raise

            if not probe(binding):
                self._revert(old_sock, old_binding, new_sock)
                raise ReapplyFailed(f"new listener {binding} is not reachable")

            try:
                self.persist(binding)
            except (StoreError, PartialApplyError) as e:
                self._revert(old_sock, old_binding, new_sock)
                self._restore_persisted(old_binding, e)
                raise ReapplyFailed(f"binding change not saved, reverted to {old_binding}: {e.message}") from e

            self.listener.release(old_sock)
            logger.info(f"Panel now listening on {binding}")
            return binding

    # ─────────────────────────────────────────────────────────── helpers ──────

    @staticmethod
    def _resolve(address: str, ipv6: bool):
        try:
            return ipaddress.ip_address(address.split("%", 1)[0])
        except ValueError:
            pass
        family = socket.AF_INET6 if ipv6 else socket.AF_INET
        try:
            infos = socket.getaddrinfo(address, None, family, socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise InvalidAddress(f"cannot resolve {address}: {e}") from e
        return ipaddress.ip_address(infos[0][4][0].split("%", 1)[0])

    def persist(self, binding: Binding) -> None:
        """Record ``binding`` as the stored listener settings."""
        apply_sequence(self.store, [
            (SettingKey.SERVER_PORT, str(binding.port)),
            (SettingKey.BIND_ADDRESS, binding.address),
            (SettingKey.IPV6, ENABLE if binding.ipv6 else DISABLE),
        ], operation="binding update")

    def _revert(self, old_sock, old_binding: Binding, new_sock) -> None:
        try:
            self.listener.swap(old_sock, old_binding)
        except ReapplyFailed:
            # Runner refused the old socket; the new one stays the tracked listener
            logger.critical(f"Could not swap back to {old_binding}; new listener stays active")
            self.listener.release(old_sock)
            return
        self.listener.release(new_sock)

    def _restore_persisted(self, old_binding: Binding, cause) -> None:
        try:
            self.persist(old_binding)
        except (StoreError, PartialApplyError) as e:
            logger.error(f"Stored binding may not match the live listener ({old_binding}): {e.message}")
            committed = getattr(cause, "committed", 0)
            raise PartialApplyError(
                f"binding reverted to {old_binding} but settings could not be restored: {e.message}",
                committed=committed,
                total=3,
                committed_keys=getattr(cause, "committed_keys", []),
                failed_key=getattr(cause, "failed_key", None),
            ) from e
