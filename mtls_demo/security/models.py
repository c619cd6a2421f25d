"""
Security models for mTLS certificate handling and validation.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.x509.oid import ExtensionOID, NameOID


class RejectReason(Enum):
    """Reasons a peer certificate can be rejected."""
    UNTRUSTED_CHAIN = "UntrustedChain"
    EXPIRED = "Expired"
    NOT_YET_VALID = "NotYetValid"
    REVOKED = "Revoked"
    IDENTITY_MISMATCH = "IdentityMismatch"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class CertificateBundle:
    """An identity: leaf certificate, its private key and any extra chain certificates."""
    certificate: x509.Certificate
    private_key: PrivateKeyTypes
    chain: Tuple[x509.Certificate, ...] = ()
    source_path: str = ""

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()


@dataclass(frozen=True)
class TrustAnchors:
    """Root certificates that peer chains must terminate at."""
    certificates: Tuple[x509.Certificate, ...]
    source_path: str = ""

    def __post_init__(self):
        if not self.certificates:
            raise ValueError("At least one trust anchor certificate is required")

    def __iter__(self):
        return iter(self.certificates)

    def __len__(self):
        return len(self.certificates)

    def contains(self, cert: x509.Certificate) -> bool:
        """Check whether the exact certificate is one of the anchors."""
        return any(anchor == cert for anchor in self.certificates)

    def issuers_of(self, cert: x509.Certificate) -> List[x509.Certificate]:
        """Anchors whose subject matches the certificate's issuer name."""
        return [anchor for anchor in self.certificates if anchor.subject == cert.issuer]


@dataclass(frozen=True)
class PeerIdentity:
    """Identity details extracted from a peer certificate for a single connection."""
    subject: str
    issuer: str
    common_name: Optional[str]
    dns_names: Tuple[str, ...]
    ip_addresses: Tuple[str, ...]
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint: str

    @classmethod
    def from_certificate(cls, cert: x509.Certificate) -> 'PeerIdentity':
        """Build a peer identity from a parsed certificate."""
        common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        common_name = common_names[0].value if common_names else None

        dns_names: Tuple[str, ...] = ()
        ip_addresses: Tuple[str, ...] = ()
        try:
            san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
            dns_names = tuple(san.get_values_for_type(x509.DNSName))
            ip_addresses = tuple(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
        except x509.ExtensionNotFound:
            pass

        return cls(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            common_name=common_name,
            dns_names=dns_names,
            ip_addresses=ip_addresses,
            serial_number=format(cert.serial_number, 'x'),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
        )

    @property
    def client_id(self) -> str:
        """Short identifier used in logs: common name, falling back to the serial number."""
        return self.common_name or self.serial_number


@dataclass(frozen=True)
class ValidationVerdict:
    """Outcome of validating a peer certificate: ACCEPT, or REJECT with a single reason."""
    accepted: bool
    reason: Optional[RejectReason] = None
    detail: Optional[str] = None
    peer: Optional[PeerIdentity] = None

    @classmethod
    def accept(cls, peer: PeerIdentity) -> 'ValidationVerdict':
        return cls(accepted=True, peer=peer)

    @classmethod
    def reject(cls, reason: RejectReason, detail: str,
               peer: Optional[PeerIdentity] = None) -> 'ValidationVerdict':
        return cls(accepted=False, reason=reason, detail=detail, peer=peer)

    def describe(self) -> str:
        if self.accepted:
            return "ACCEPT"
        return f"REJECT({self.reason}): {self.detail}"


@dataclass
class ExchangeResult:
    """Result of the client's single request: a response body or a typed error."""
    ok: bool
    status_code: Optional[int] = None
    body: Optional[str] = None
    error: Optional[Exception] = None
    peer: Optional[PeerIdentity] = None
    elapsed_ms: float = 0.0

    @classmethod
    def success(cls, status_code: int, body: str, peer: Optional[PeerIdentity] = None,
                elapsed_ms: float = 0.0) -> 'ExchangeResult':
        return cls(ok=True, status_code=status_code, body=body, peer=peer, elapsed_ms=elapsed_ms)

    @classmethod
    def failure(cls, error: Exception, status_code: Optional[int] = None,
                elapsed_ms: float = 0.0) -> 'ExchangeResult':
        return cls(ok=False, status_code=status_code, error=error, elapsed_ms=elapsed_ms)
