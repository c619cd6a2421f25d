"""
Security service for mTLS: holds the process identity, trust anchors and
validation policy, and builds the TLS contexts for both roles.
"""
import logging
import os
import secrets
import ssl
import tempfile
from typing import Iterable, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .credentials import load_certificate_bundle, load_crls, load_trust_anchors
from .models import CertificateBundle, PeerIdentity, RejectReason, TrustAnchors, ValidationVerdict
from .revocation import RevocationChecker
from .validator import CertificateValidator, HostnamePolicy, IdentityPolicy, SubjectAllowListPolicy

CIPHERS = 'ECDHE+AESGCM:ECDHE+CHACHA20:DHE+AESGCM:DHE+CHACHA20:!aNULL:!MD5:!DSS'


class SecurityService:
    """
    Immutable security configuration for one process.

    The bundle, anchors and CRLs are loaded once at startup and injected here;
    nothing in this class is mutated afterwards, so it is shared freely between
    connection threads.
    """

    def __init__(self, bundle: CertificateBundle, trust_anchors: TrustAnchors,
                 identity_policy: IdentityPolicy,
                 crls: Iterable[x509.CertificateRevocationList] = (),
                 revocation_soft_fail: bool = True):
        """Initialize the security service with already loaded credentials."""
        self.bundle = bundle
        self.trust_anchors = trust_anchors
        self.identity_policy = identity_policy
        self.crls = tuple(crls)
        self.revocation_soft_fail = revocation_soft_fail
        self.logger = logging.getLogger(__name__)

        revocation_checker = None
        if self.crls or not revocation_soft_fail:
            revocation_checker = RevocationChecker(self.crls, soft_fail=revocation_soft_fail)
        self.validator = CertificateValidator(trust_anchors, revocation_checker)

    @classmethod
    def for_server(cls, config) -> 'SecurityService':
        """
        Load the server identity and client-validation policy from configuration.

        Raises:
            CredentialLoadError: If any credential cannot be loaded
        """
        policy = SubjectAllowListPolicy(
            allowed_subjects=config.allowed_subjects,
            allowed_common_names=config.allowed_common_names
        )
        return cls(
            bundle=load_certificate_bundle(config.cert_path, config.key_path, config.passphrase),
            trust_anchors=load_trust_anchors(config.trust_anchor_path),
            identity_policy=policy,
            crls=load_crls(config.crl_paths),
            revocation_soft_fail=config.revocation_soft_fail
        )

    @classmethod
    def for_client(cls, config) -> 'SecurityService':
        """
        Load the client identity and server-validation policy from configuration.

        Raises:
            CredentialLoadError: If any credential cannot be loaded
        """
        return cls(
            bundle=load_certificate_bundle(config.cert_path, config.key_path, config.passphrase),
            trust_anchors=load_trust_anchors(config.trust_anchor_path),
            identity_policy=HostnamePolicy(config.expected_hostname),
            crls=load_crls(config.crl_paths),
            revocation_soft_fail=config.revocation_soft_fail
        )

    def create_server_context(self) -> ssl.SSLContext:
        """Create an SSL context that presents our certificate and requires a client certificate."""
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH, cadata=self._anchors_pem())
        self._configure(context)

        # Require client certificates
        context.verify_mode = ssl.CERT_REQUIRED

        self.logger.info("SSL context configured for mTLS server")
        return context

    def create_client_context(self) -> ssl.SSLContext:
        """Create an SSL context that presents our certificate and verifies the server against our anchors only."""
        # Passing cadata keeps the system trust store out of the context
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cadata=self._anchors_pem())
        self._configure(context)

        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED

        self.logger.info("SSL context configured for mTLS client")
        return context

    def _configure(self, context: ssl.SSLContext) -> None:
        # Set protocol and cipher options
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.set_ciphers(CIPHERS)

        self._write_temporary(self._identity_pem, lambda path, password: context.load_cert_chain(
            certfile=path, password=password
        ))

        # The TLS layer can only hard-fail on missing CRLs, so it checks them only in hard-fail mode
        if self.crls and not self.revocation_soft_fail:
            self._write_temporary(self._crls_pem, lambda path, password: context.load_verify_locations(cafile=path))
            context.verify_flags |= ssl.VERIFY_CRL_CHECK_LEAF

    def _anchors_pem(self) -> str:
        return ''.join(
            anchor.public_bytes(serialization.Encoding.PEM).decode('ascii')
            for anchor in self.trust_anchors
        )

    def _identity_pem(self, password: bytes) -> bytes:
        certificates = (self.bundle.certificate,) + self.bundle.chain
        key = self.bundle.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(password)
        )
        return b''.join(cert.public_bytes(serialization.Encoding.PEM) for cert in certificates) + key

    def _crls_pem(self, password: bytes) -> bytes:
        return b''.join(crl.public_bytes(serialization.Encoding.PEM) for crl in self.crls)

    def _write_temporary(self, render, load) -> None:
        """
        Hand PEM data to the ssl module, which only loads identities from files.

        The private key is written encrypted under a one-time password and the
        file is removed as soon as it has been loaded.
        """
        password = secrets.token_urlsafe(32).encode('ascii')
        fd, path = tempfile.mkstemp(suffix='.pem')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(render(password))
            load(path, password)
        finally:
            os.unlink(path)

    def validate_peer_chain(self, chain: Sequence[bytes],
                            policy: Optional[IdentityPolicy] = None) -> ValidationVerdict:
        """Validate a DER chain received during a handshake (leaf first)."""
        return self.validator.validate_der(chain, policy or self.identity_policy)

    def validate_client_certificate(self, cert_pem: str) -> ValidationVerdict:
        """Validate a PEM client certificate, e.g. one forwarded in a WSGI environment."""
        try:
            chain = x509.load_pem_x509_certificates(cert_pem.encode('ascii'))
        except (ValueError, UnicodeEncodeError) as e:
            self.logger.warning(f"Unparseable client certificate: {e}")
            return ValidationVerdict.reject(RejectReason.UNTRUSTED_CHAIN, "malformed client certificate")
        return self.validator.validate(chain[0], self.identity_policy, chain[1:])

    def get_certificate_info(self, cert: Optional[x509.Certificate] = None) -> PeerIdentity:
        """Describe a certificate, by default our own."""
        return PeerIdentity.from_certificate(cert or self.bundle.certificate)
