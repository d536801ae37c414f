"""Throwaway self-signed certificates for the TLS reference server."""

from __future__ import annotations

import ipaddress
import ssl
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


def build_subject_alt_name(common_name: str) -> Optional[x509.SubjectAlternativeName]:
    if not common_name:
        return None
    try:
        entry = x509.IPAddress(ipaddress.ip_address(common_name))
    except ValueError:
        entry = x509.DNSName(common_name)
    return x509.SubjectAlternativeName([entry])


def generate_self_signed(common_name: str = "localhost", days: int = 1) -> Tuple[bytes, bytes]:
    """Return ``(key_pem, cert_pem)`` for a short-lived server certificate."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "presence-probe"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=max(1, days)))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
    )
    san = build_subject_alt_name(common_name)
    if san is not None:
        builder = builder.add_extension(san, critical=False)
    certificate = builder.sign(private_key=private_key, algorithm=hashes.SHA256())

    key_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_bytes = certificate.public_bytes(serialization.Encoding.PEM)
    return key_bytes, cert_bytes


def write_self_signed(directory: Path, common_name: str = "localhost") -> Tuple[Path, Path]:
    """Write a fresh certificate and key into ``directory``; return ``(cert_path, key_path)``."""
    key_bytes, cert_bytes = generate_self_signed(common_name)
    key_path = Path(directory) / "server.key"
    crt_path = Path(directory) / "server.crt"
    key_path.write_bytes(key_bytes)
    crt_path.write_bytes(cert_bytes)
    return crt_path, key_path


def server_ssl_context(common_name: str = "localhost") -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    # load_cert_chain only reads from files
    with tempfile.TemporaryDirectory(prefix="presence-cert-") as tmp:
        crt_path, key_path = write_self_signed(Path(tmp), common_name)
        context.load_cert_chain(str(crt_path), str(key_path))
    return context
