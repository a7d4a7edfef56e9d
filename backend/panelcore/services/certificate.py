"""
Certificate Service - the panel's own HTTPS certificate.

Certificates are validated in memory (parse, key match, validity window),
written to the secret directory with atomic replaces and then loaded into the
live listener. If the listener refuses the new pair or the settings cannot be
saved, the previous files and TLS state are put back before the error is
raised, so the files on disk never run ahead of what the listener serves.
"""
import enum
import ipaddress
import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..models.setting import DISABLE, ENABLE, SettingKey
from ..utils.files import atomic_write, read_optional, restore
from .errors import (
    InvalidCertificate,
    KeyMismatch,
    NotFoundError,
    PartialApplyError,
    ReapplyFailed,
    StoreError,
    ValidationError,
)
from .listener import PanelListener
from .settings_store import SettingsStore, apply_sequence

logger = logging.getLogger(__name__)

CERT_FILE = "server.crt"
KEY_FILE = "server.key"


class SourceKind(str, enum.Enum):
    SELF_SIGNED = "self"
    IMPORTED = "import"


@dataclass
class CertificateInfo:
    issuer: str
    subject: str
    not_before: datetime
    not_after: datetime
    source_kind: str
    domains: List[str] = field(default_factory=list)
    serial_number: str = ""
    fingerprint: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "issuer": self.issuer,
            "subject": self.subject,
            "notBefore": self.not_before.isoformat(),
            "notAfter": self.not_after.isoformat(),
            "sourceKind": self.source_kind,
            "domains": self.domains,
            "serialNumber": self.serial_number,
            "fingerprint": self.fingerprint,
        }


def _as_bytes(value) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


def parse_pair(cert_pem, key_pem, now: Optional[datetime] = None):
    """Parse and cross-check a PEM certificate chain and private key.

    Returns (leaf_certificate, private_key).
    """
    try:
        chain = x509.load_pem_x509_certificates(_as_bytes(cert_pem))
    except ValueError as e:
        raise InvalidCertificate(f"certificate is not valid PEM: {e}") from e
    leaf = chain[0]

    try:
        key = serialization.load_pem_private_key(_as_bytes(key_pem), password=None)
    except TypeError as e:
        raise InvalidCertificate("encrypted private keys are not supported") from e
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidCertificate(f"private key is not valid PEM: {e}") from e

    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der = serialization.Encoding.DER
    if leaf.public_key().public_bytes(der, spki) != key.public_key().public_bytes(der, spki):
        raise KeyMismatch("private key does not match the certificate")

    now = now or datetime.now(timezone.utc)
    if now < leaf.not_valid_before_utc:
        raise InvalidCertificate(f"certificate is not valid before {leaf.not_valid_before_utc.isoformat()}")
    if now > leaf.not_valid_after_utc:
        raise InvalidCertificate(f"certificate expired at {leaf.not_valid_after_utc.isoformat()}")
    return leaf, key


def describe(cert: x509.Certificate, source_kind: str) -> CertificateInfo:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        domains = san.get_values_for_type(x509.DNSName) + [
            str(ip) for ip in san.get_values_for_type(x509.IPAddress)
        ]
    except x509.ExtensionNotFound:
        domains = []
    return CertificateInfo(
        issuer=cert.issuer.rfc4514_string(),
        subject=cert.subject.rfc4514_string(),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        source_kind=source_kind,
        domains=domains,
        serial_number=format(cert.serial_number, "x"),
        fingerprint=cert.fingerprint(hashes.SHA256()).hex(":").upper(),
    )


def generate_self_signed(hostname: str, addresses: Optional[List[str]] = None,
                         days: int = 3650, key_size: int = 2048) -> Tuple[bytes, bytes]:
    """Create a self-signed server certificate. Returns (cert_pem, key_pem)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    names: List[x509.GeneralName] = []
    for entry in [hostname] + list(addresses or []):
        if not entry:
            continue
        try:
            general = x509.IPAddress(ipaddress.ip_address(entry))
        except ValueError:
            general = x509.DNSName(entry)
        if general not in names:
            names.append(general)

    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectAlternativeName(names), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


class CertificateService:

    def __init__(self, store: SettingsStore, listener: PanelListener, secret_dir: str,
                 key_size: int = 2048, cert_days: int = 3650,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self.listener = listener
        self.secret_dir = secret_dir
        self.key_size = key_size
        self.cert_days = cert_days
        self.clock = clock

    @property
    def cert_path(self) -> str:
        return os.path.join(self.secret_dir, CERT_FILE)

    @property
    def key_path(self) -> str:
        return os.path.join(self.secret_dir, KEY_FILE)

    def has_certificate(self) -> bool:
        return os.path.isfile(self.cert_path) and os.path.isfile(self.key_path)

    # ─────────────────────────────────────────────────────────── read ─────────

    def export_certificate(self) -> bytes:
        data = read_optional(self.cert_path)
        if data is None:
            raise NotFoundError("no certificate installed")
        return data

    def describe_certificate(self) -> CertificateInfo:
        data = self.export_certificate()
        try:
            cert = x509.load_pem_x509_certificates(data)[0]
        except ValueError as e:
            raise InvalidCertificate(f"installed certificate cannot be parsed: {e}") from e
        kind = self.store.get_or_default(SettingKey.SSL_TYPE, SourceKind.SELF_SIGNED.value)
        return describe(cert, kind)

    # ─────────────────────────────────────────────────────────── write ────────

    def load_from_user_certificate(self, cert_pem, key_pem) -> CertificateInfo:
        if not cert_pem or not key_pem:
            raise ValidationError("certificate and private key are both required")
        cert, _ = parse_pair(cert_pem, key_pem, now=self.clock())
        self._install(_as_bytes(cert_pem), _as_bytes(key_pem), SourceKind.IMPORTED)
        logger.info(f"Imported certificate for {cert.subject.rfc4514_string()}")
        return describe(cert, SourceKind.IMPORTED.value)

    def generate(self, domain: Optional[str] = None) -> CertificateInfo:
        """Generate and install a fresh self-signed pair."""
        hostname = (domain or "").strip() or socket.gethostname()
        addresses = []
        if not self.listener.binding.is_wildcard:
            addresses.append(self.listener.binding.address)
        cert_pem, key_pem = generate_self_signed(hostname, addresses, self.cert_days, self.key_size)
        cert, _ = parse_pair(cert_pem, key_pem, now=self.clock())
        self._install(cert_pem, key_pem, SourceKind.SELF_SIGNED)
        logger.info(f"Installed self-signed certificate for {hostname}")
        return describe(cert, SourceKind.SELF_SIGNED.value)

    def enable(self) -> CertificateInfo:
        """Serve https again with the installed pair, revalidating it first."""
        cert_pem = self.export_certificate()
        key_pem = read_optional(self.key_path)
        if key_pem is None:
            raise NotFoundError("no private key installed")
        raw_kind = self.store.get_or_default(SettingKey.SSL_TYPE, SourceKind.SELF_SIGNED.value)
        kind = SourceKind.IMPORTED if raw_kind == SourceKind.IMPORTED.value else SourceKind.SELF_SIGNED
        cert, _ = parse_pair(cert_pem, key_pem, now=self.clock())
        self._install(cert_pem, key_pem, kind)
        logger.info("Panel TLS enabled with the installed certificate")
        return describe(cert, kind.value)

    def ensure_certificate(self) -> bool:
        """Bootstrap a self-signed pair if none is installed. Returns True if one was created."""
        if self.has_certificate():
            return False
        logger.info("No panel certificate found, generating a self-signed one")
        self.generate()
        return True

    def disable(self) -> None:
        """Serve plain http again. Certificate files are kept for later re-enable."""
        with self.listener.lock:
            was_tls = self.listener.tls_enabled
            self.listener.disable_tls()
            try:
                self.store.set(SettingKey.SSL, DISABLE)
            except StoreError:
                if was_tls:
                    self._reload_or_log()
                raise
        logger.info("Panel TLS disabled")

    def _install(self, cert_pem: bytes, key_pem: bytes, kind: SourceKind) -> None:
        with self.listener.lock:
            was_tls = self.listener.tls_enabled
            previous_cert = read_optional(self.cert_path)
            previous_key = read_optional(self.key_path)
            previous_kind = self.store.get_or_default(SettingKey.SSL_TYPE, SourceKind.SELF_SIGNED.value)

            try:
                atomic_write(self.key_path, key_pem, 0o600)
                atomic_write(self.cert_path, cert_pem, 0o644)
            except OSError as e:
                logger.error(f"Writing certificate files failed: {e}")
                self._restore_files(previous_cert, previous_key)
                raise ReapplyFailed(f"certificate files could not be written: {e.strerror or e}") from e

            try:
                self.listener.reload_tls(self.cert_path, self.key_path)
            except ReapplyFailed:
                self._restore_files(previous_cert, previous_key)
                raise

            try:
                apply_sequence(self.store, [
                    (SettingKey.SSL_TYPE, kind.value),
                    (SettingKey.SSL, ENABLE),
                ], operation="certificate install")
            except (StoreError, PartialApplyError) as e:
                self._restore_files(previous_cert, previous_key)
                if was_tls and previous_cert is not None:
                    self._reload_or_log()
                else:
                    self.listener.disable_tls()
                if isinstance(e, PartialApplyError):
                    self._restore_kind(previous_kind, e)
                raise ReapplyFailed(f"certificate not saved, previous state restored: {e.message}") from e

    def _restore_kind(self, previous_kind: str, cause: PartialApplyError) -> None:
        try:
            self.store.set(SettingKey.SSL_TYPE, previous_kind)
        except StoreError as e:
            logger.error(f"Stored SSLType may not match the installed certificate: {e.message}")
            raise PartialApplyError(
                f"certificate files restored but SSLType could not be reset: {e.message}",
                committed=cause.committed,
                total=cause.total,
                committed_keys=cause.committed_keys,
                failed_key=cause.failed_key,
            ) from e

    def _restore_files(self, previous_cert: Optional[bytes], previous_key: Optional[bytes]) -> None:
        try:
            restore(self.key_path, previous_key, 0o600)
            restore(self.cert_path, previous_cert, 0o644)
        except OSError as e:
            logger.critical(f"Could not restore previous certificate files: {e}")
            raise ReapplyFailed(f"previous certificate files could not be restored: {e.strerror or e}") from e
        logger.warning("Restored previous certificate files")

    def _reload_or_log(self) -> None:
        try:
            self.listener.reload_tls(self.cert_path, self.key_path)
        except ReapplyFailed as e:
            logger.critical(f"Could not restore previous TLS configuration: {e.message}")
