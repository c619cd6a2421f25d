"""
Certificate validation: chain of trust, validity window, revocation and identity binding.
"""
import ipaddress
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.x509.oid import ExtensionOID, NameOID

from .errors import (
    CertificateValidationError, Expired, IdentityMismatch, NotYetValid, UntrustedChain
)
from .models import PeerIdentity, TrustAnchors, ValidationVerdict
from .revocation import RevocationChecker

logger = logging.getLogger(__name__)


class IdentityPolicy:
    """Rule deciding whether a certificate names the peer we expect."""

    def check(self, cert: x509.Certificate) -> None:
        """Raise IdentityMismatch when the certificate does not satisfy the rule."""
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


class SubjectAllowListPolicy(IdentityPolicy):
    """
    Accept certificates whose subject is on an explicit allow-list.

    A certificate matches when its full subject distinguished name equals an
    allow-listed name, or when its commonName equals an allow-listed common
    name exactly. Both comparisons are whole-value; an empty policy accepts
    nothing.
    """

    def __init__(self, allowed_subjects: Iterable[Union[str, x509.Name]] = (),
                 allowed_common_names: Iterable[str] = ()):
        self.allowed_subjects = frozenset(
            name if isinstance(name, x509.Name) else x509.Name.from_rfc4514_string(name)
            for name in allowed_subjects
        )
        self.allowed_common_names = frozenset(allowed_common_names)

    def check(self, cert: x509.Certificate) -> None:
        if cert.subject in self.allowed_subjects:
            return

        common_names = [attr.value for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
        # A subject carrying several commonNames is ambiguous and never matches by CN
        if len(common_names) == 1 and common_names[0] in self.allowed_common_names:
            return

        raise IdentityMismatch(
            f"subject {cert.subject.rfc4514_string()} is not allowed",
            subject=cert.subject.rfc4514_string()
        )

    def describe(self) -> str:
        subjects = sorted(name.rfc4514_string() for name in self.allowed_subjects)
        return f"subjects={subjects} common_names={sorted(self.allowed_common_names)}"


def _match_dns_name(pattern: str, hostname: str) -> bool:
    """Match a hostname against a DNS name, allowing a single left-most wildcard label."""
    pattern = pattern.lower().rstrip('.')
    hostname = hostname.lower().rstrip('.')

    if '*' not in pattern:
        return pattern == hostname

    pattern_labels = pattern.split('.')
    host_labels = hostname.split('.')
    if pattern_labels[0] != '*' or any('*' in label for label in pattern_labels[1:]):
        return False
    # "*.com" style wildcards are never honored
    if len(pattern_labels) < 3:
        return False
    if len(pattern_labels) != len(host_labels):
        return False
    return pattern_labels[1:] == host_labels[1:]


class HostnamePolicy(IdentityPolicy):
    """Accept server certificates issued for the expected hostname or IP address."""

    def __init__(self, expected_hostname: str):
        if not expected_hostname:
            raise ValueError("expected_hostname is required")
        self.expected_hostname = expected_hostname
        try:
            self._expected_ip = ipaddress.ip_address(expected_hostname)
        except ValueError:
            self._expected_ip = None

    def check(self, cert: x509.Certificate) -> None:
        try:
            san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
        except x509.ExtensionNotFound:
            san = None

        if san is not None:
            if self._expected_ip is not None:
                matched = self._expected_ip in san.get_values_for_type(x509.IPAddress)
            else:
                matched = any(_match_dns_name(name, self.expected_hostname)
                              for name in san.get_values_for_type(x509.DNSName))
        else:
            # Legacy certificates without SANs: fall back to an exact commonName match
            common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
            matched = any(attr.value.lower() == self.expected_hostname.lower() for attr in common_names)

        if not matched:
            raise IdentityMismatch(
                f"certificate is not valid for host {self.expected_hostname}",
                subject=cert.subject.rfc4514_string()
            )

    def describe(self) -> str:
        return f"hostname={self.expected_hostname}"


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    """Check that issuer's name and key produced the certificate's signature."""
    try:
        cert.verify_directly_issued_by(issuer)
        return True
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_oid(ExtensionOID.BASIC_CONSTRAINTS).value.ca
    except x509.ExtensionNotFound:
        return False


class CertificateValidator:
    """
    Decide ACCEPT or REJECT(reason) for a presented certificate chain.

    Validation is a pure function of the chain, the configured trust anchors and
    revocation lists, the identity policy and the current time. Checks run in a
    fixed order and stop at the first failure: chain building, validity window,
    revocation, identity.
    """

    MAX_CHAIN_DEPTH = 10

    def __init__(self, trust_anchors: TrustAnchors,
                 revocation_checker: Optional[RevocationChecker] = None):
        self.trust_anchors = trust_anchors
        self.revocation_checker = revocation_checker

    def validate(self, leaf: x509.Certificate, policy: IdentityPolicy,
                 intermediates: Sequence[x509.Certificate] = (),
                 now: Optional[datetime] = None) -> ValidationVerdict:
        """
        Validate a leaf certificate.

        Args:
            leaf: Certificate presented by the peer
            policy: Identity rule the leaf must satisfy
            intermediates: Other certificates the peer sent during the handshake
            now: Validation time, defaults to the current UTC time

        Returns:
            ValidationVerdict carrying the first failing reason, if any
        """
        now = now or datetime.now(timezone.utc)
        try:
            peer = PeerIdentity.from_certificate(leaf)
        except ValueError as e:
            logger.debug(f"Rejected unparsable certificate: {e}")
            return ValidationVerdict.reject(UntrustedChain.reason, f"malformed peer certificate ({e})")

        try:
            path = self.build_path(leaf, intermediates)
            self._check_validity(path, now)
            if self.revocation_checker is not None:
                self.revocation_checker.check_path(path, now)
            policy.check(leaf)
        except CertificateValidationError as e:
            logger.debug(f"Rejected {peer.subject}: {e}")
            return ValidationVerdict.reject(e.reason, e.detail, peer)

        logger.debug(f"Accepted {peer.subject} via {len(path)}-certificate path")
        return ValidationVerdict.accept(peer)

    def validate_der(self, chain: Sequence[bytes], policy: IdentityPolicy,
                     now: Optional[datetime] = None) -> ValidationVerdict:
        """Validate a DER-encoded chain as received from a TLS peer (leaf first)."""
        if not chain:
            return ValidationVerdict.reject(
                UntrustedChain.reason, "peer presented no certificate"
            )
        try:
            certificates = [x509.load_der_x509_certificate(der) for der in chain]
        except ValueError as e:
            return ValidationVerdict.reject(UntrustedChain.reason, f"malformed peer certificate ({e})")
        return self.validate(certificates[0], policy, certificates[1:], now=now)

    def build_path(self, leaf: x509.Certificate,
                   intermediates: Sequence[x509.Certificate] = ()) -> List[x509.Certificate]:
        """
        Build a path from the leaf to a trust anchor.

        Returns:
            Certificates ordered leaf first, trust anchor last

        Raises:
            UntrustedChain: If no path to a configured anchor exists
        """
        subject = leaf.subject.rfc4514_string()
        path = [leaf]
        pool = [cert for cert in intermediates if cert != leaf]
        current = leaf

        while len(path) <= self.MAX_CHAIN_DEPTH:
            if self.trust_anchors.contains(current):
                return path

            for anchor in self.trust_anchors.issuers_of(current):
                if _issued_by(current, anchor):
                    path.append(anchor)
                    return path

            parent = next(
                (cert for cert in pool
                 if cert.subject == current.issuer and _is_ca(cert) and _issued_by(current, cert)),
                None
            )
            if parent is None:
                raise UntrustedChain(
                    f"no trusted issuer for {current.subject.rfc4514_string()} "
                    f"(issuer {current.issuer.rfc4514_string()})",
                    subject=subject
                )
            path.append(parent)
            pool.remove(parent)
            current = parent

        raise UntrustedChain(f"chain longer than {self.MAX_CHAIN_DEPTH} certificates", subject=subject)

    def _check_validity(self, path: Sequence[x509.Certificate], now: datetime) -> None:
        subject = path[0].subject.rfc4514_string()
        for cert in path:
            name = cert.subject.rfc4514_string()
            if now < cert.not_valid_before_utc:
                raise NotYetValid(
                    f"{name} is not valid before {cert.not_valid_before_utc.isoformat()}",
                    subject=subject
                )
            if now > cert.not_valid_after_utc:
                raise Expired(
                    f"{name} expired at {cert.not_valid_after_utc.isoformat()}",
                    subject=subject
                )
