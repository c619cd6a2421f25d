"""
Error taxonomy for credential loading, certificate validation and networking.
"""
from typing import Optional

from .models import RejectReason, ValidationVerdict


class MTLSError(Exception):
    """Base class for all mTLS demo errors."""


class CredentialLoadError(MTLSError):
    """A certificate bundle, trust anchor or CRL could not be loaded. Fatal at startup."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{message}: {path}")
        self.path = path
        self.message = message


class CertificateValidationError(MTLSError):
    """A peer certificate was rejected. Terminates only the offending connection."""

    reason: Optional[RejectReason] = None

    def __init__(self, detail: str, subject: Optional[str] = None):
        super().__init__(f"{self.reason}: {detail}")
        self.detail = detail
        self.subject = subject


class UntrustedChain(CertificateValidationError):
    reason = RejectReason.UNTRUSTED_CHAIN


class Expired(CertificateValidationError):
    reason = RejectReason.EXPIRED


class NotYetValid(CertificateValidationError):
    reason = RejectReason.NOT_YET_VALID


class Revoked(CertificateValidationError):
    reason = RejectReason.REVOKED


class IdentityMismatch(CertificateValidationError):
    reason = RejectReason.IDENTITY_MISMATCH


_ERRORS_BY_REASON = {
    RejectReason.UNTRUSTED_CHAIN: UntrustedChain,
    RejectReason.EXPIRED: Expired,
    RejectReason.NOT_YET_VALID: NotYetValid,
    RejectReason.REVOKED: Revoked,
    RejectReason.IDENTITY_MISMATCH: IdentityMismatch,
}


def error_for_reason(reason: RejectReason, detail: str,
                     subject: Optional[str] = None) -> CertificateValidationError:
    """Build the typed validation error for a reject reason."""
    return _ERRORS_BY_REASON[reason](detail, subject=subject)


def error_for_verdict(verdict: ValidationVerdict) -> CertificateValidationError:
    """Build the typed validation error for a REJECT verdict."""
    if verdict.accepted:
        raise ValueError("Cannot build an error from an accepted verdict")
    subject = verdict.peer.subject if verdict.peer else None
    return error_for_reason(verdict.reason, verdict.detail, subject=subject)


# OpenSSL X509_V_ERR_* codes reported by ssl.SSLCertVerificationError.verify_code
_REASONS_BY_VERIFY_CODE = {
    9: RejectReason.NOT_YET_VALID,       # X509_V_ERR_CERT_NOT_YET_VALID
    10: RejectReason.EXPIRED,            # X509_V_ERR_CERT_HAS_EXPIRED
    23: RejectReason.REVOKED,            # X509_V_ERR_CERT_REVOKED
    62: RejectReason.IDENTITY_MISMATCH,  # X509_V_ERR_HOSTNAME_MISMATCH
    64: RejectReason.IDENTITY_MISMATCH,  # X509_V_ERR_IP_ADDRESS_MISMATCH
}


def reason_for_verify_code(verify_code: Optional[int]) -> RejectReason:
    """Map a TLS-layer verification failure onto the reject reasons; anything else is an untrusted chain."""
    return _REASONS_BY_VERIFY_CODE.get(verify_code, RejectReason.UNTRUSTED_CHAIN)


class NetworkError(MTLSError):
    """Connection-level failure. Reported to the caller, never retried."""


class ServerUnreachable(NetworkError):
    """The server could not be reached or the connection failed before TLS completed."""


class PeerRejectedError(NetworkError):
    """The server aborted the connection after our certificate was presented."""
