"""
Loaders for certificate bundles, trust anchors and certificate revocation lists.

Every loader either returns a complete object or raises CredentialLoadError;
a partially loaded identity is never returned.
"""
import logging
import os
import re
from typing import Iterable, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .errors import CredentialLoadError
from .models import CertificateBundle, TrustAnchors

logger = logging.getLogger(__name__)

PKCS12_SUFFIXES = ('.p12', '.pfx')

_PEM_KEY_PATTERN = re.compile(
    rb'-----BEGIN ([A-Z ]*)PRIVATE KEY-----.+?-----END \1PRIVATE KEY-----',
    re.DOTALL
)


def _read_file(file_path: str) -> bytes:
    """Read a credential file, rejecting missing or empty files."""
    if not file_path:
        raise CredentialLoadError(str(file_path), "No credential path configured")
    if not os.path.exists(file_path):
        raise CredentialLoadError(file_path, "Credential file not found")
    try:
        with open(file_path, 'rb') as f:
            content = f.read()
    except OSError as e:
        raise CredentialLoadError(file_path, f"Credential file is not readable ({e.strerror})") from e

    if not content.strip():
        raise CredentialLoadError(file_path, "Credential file is empty")
    return content


def _public_key_bytes(key) -> bytes:
    return key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _extract_pem_key(path: str, data: bytes) -> bytes:
    """Pull the private key block out of a combined certificate + key PEM file."""
    match = _PEM_KEY_PATTERN.search(data)
    if match is None:
        raise CredentialLoadError(path, "No private key found (set a key path or use a combined PEM file)")
    return match.group(0)


def _load_pkcs12(path: str, data: bytes, password: Optional[bytes]) -> CertificateBundle:
    try:
        private_key, certificate, additional = pkcs12.load_key_and_certificates(data, password)
    except (ValueError, TypeError) as e:
        raise CredentialLoadError(path, f"Cannot open PKCS#12 archive (wrong passphrase or malformed data: {e})") from e

    if certificate is None:
        raise CredentialLoadError(path, "PKCS#12 archive contains no certificate")
    if private_key is None:
        raise CredentialLoadError(path, "PKCS#12 archive contains no private key")

    return CertificateBundle(
        certificate=certificate,
        private_key=private_key,
        chain=tuple(additional or ()),
        source_path=path
    )


def _load_pem(cert_path: str, cert_data: bytes, key_path: str, key_data: bytes,
              password: Optional[bytes]) -> CertificateBundle:
    try:
        certificates = x509.load_pem_x509_certificates(cert_data)
    except ValueError as e:
        raise CredentialLoadError(cert_path, f"Malformed PEM certificate ({e})") from e

    try:
        private_key = serialization.load_pem_private_key(key_data, password=password)
    except TypeError as e:
        # Raised when a passphrase is missing for an encrypted key, or given for a plain one
        raise CredentialLoadError(key_path, f"Passphrase does not fit private key ({e})") from e
    except ValueError as e:
        raise CredentialLoadError(key_path, f"Cannot load private key (wrong passphrase or malformed data: {e})") from e

    return CertificateBundle(
        certificate=certificates[0],
        private_key=private_key,
        chain=tuple(certificates[1:]),
        source_path=cert_path
    )


def load_certificate_bundle(cert_path: str, key_path: Optional[str] = None,
                            passphrase: Optional[str] = None) -> CertificateBundle:
    """
    Load a certificate and its private key.

    Args:
        cert_path: PEM certificate (optionally followed by chain certificates and,
            when key_path is omitted, the private key), or a PKCS#12 archive
        key_path: PEM private key, if stored separately
        passphrase: Passphrase protecting the archive or the private key

    Returns:
        CertificateBundle with a private key matching the certificate

    Raises:
        CredentialLoadError: On a bad path, bad passphrase, malformed data or key mismatch
    """
    password = passphrase.encode('utf-8') if passphrase else None
    cert_data = _read_file(cert_path)

    if cert_path.lower().endswith(PKCS12_SUFFIXES):
        bundle = _load_pkcs12(cert_path, cert_data, password)
    else:
        key_data = _read_file(key_path) if key_path else _extract_pem_key(cert_path, cert_data)
        bundle = _load_pem(cert_path, cert_data, key_path or cert_path, key_data, password)

    if _public_key_bytes(bundle.certificate.public_key()) != _public_key_bytes(bundle.private_key.public_key()):
        raise CredentialLoadError(key_path or cert_path, "Private key does not match certificate")

    logger.info(f"Loaded certificate bundle for {bundle.subject} from {cert_path}")
    return bundle


def load_trust_anchors(path: str) -> TrustAnchors:
    """Load one or more root certificates (PEM, or a single DER certificate)."""
    data = _read_file(path)
    try:
        if b'-----BEGIN' in data:
            certificates = x509.load_pem_x509_certificates(data)
        else:
            certificates = [x509.load_der_x509_certificate(data)]
    except ValueError as e:
        raise CredentialLoadError(path, f"Malformed trust anchor certificate ({e})") from e

    anchors = TrustAnchors(certificates=tuple(certificates), source_path=path)
    for anchor in anchors:
        logger.info(f"Loaded trust anchor: {anchor.subject.rfc4514_string()}")
    return anchors


def load_crl(path: str) -> x509.CertificateRevocationList:
    """Load a certificate revocation list (PEM or DER)."""
    data = _read_file(path)
    try:
        if b'-----BEGIN' in data:
            return x509.load_pem_x509_crl(data)
        return x509.load_der_x509_crl(data)
    except ValueError as e:
        raise CredentialLoadError(path, f"Malformed certificate revocation list ({e})") from e


def load_crls(paths: Iterable[str]) -> List[x509.CertificateRevocationList]:
    """Load every configured revocation list."""
    crls = [load_crl(path) for path in paths]
    if crls:
        logger.info(f"Loaded {len(crls)} certificate revocation list(s)")
    return crls
