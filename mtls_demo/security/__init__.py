"""
Security package for mTLS credential loading and certificate validation.
"""
from .errors import (
    CertificateValidationError, CredentialLoadError, Expired, IdentityMismatch, MTLSError,
    NetworkError, NotYetValid, PeerRejectedError, Revoked, ServerUnreachable, UntrustedChain
)
from .models import (
    CertificateBundle, ExchangeResult, PeerIdentity, RejectReason, TrustAnchors, ValidationVerdict
)
from .security_service import SecurityService
from .session import ConnectionSession, ConnectionState
from .validator import CertificateValidator, HostnamePolicy, IdentityPolicy, SubjectAllowListPolicy

__all__ = [
    'CertificateBundle',
    'CertificateValidationError',
    'CertificateValidator',
    'ConnectionSession',
    'ConnectionState',
    'CredentialLoadError',
    'ExchangeResult',
    'Expired',
    'HostnamePolicy',
    'IdentityMismatch',
    'IdentityPolicy',
    'MTLSError',
    'NetworkError',
    'NotYetValid',
    'PeerIdentity',
    'PeerRejectedError',
    'RejectReason',
    'Revoked',
    'SecurityService',
    'ServerUnreachable',
    'SubjectAllowListPolicy',
    'TrustAnchors',
    'UntrustedChain',
    'ValidationVerdict',
]
