"""
Tests for certificate path building, validity checks and identity policies.
"""
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from cryptography.hazmat.primitives import serialization

from mtls_demo.security.errors import IdentityMismatch, UntrustedChain
from mtls_demo.security.models import RejectReason, TrustAnchors
from mtls_demo.security.revocation import RevocationChecker
from mtls_demo.security.validator import (
    CertificateValidator, HostnamePolicy, SubjectAllowListPolicy, _match_dns_name
)

from certificate_fixtures import create_ca, create_crl, create_leaf, create_self_signed


class TestCertificateValidator(unittest.TestCase):
    """Test cases for CertificateValidator."""

    @classmethod
    def setUpClass(cls):
        """Build a small PKI shared by every test."""
        cls.ca_cert, cls.ca_key = create_ca("Test Root CA")
        cls.intermediate_cert, cls.intermediate_key = create_ca(
            "Test Issuing CA", issuer_cert=cls.ca_cert, issuer_key=cls.ca_key
        )
        cls.client_cert, _ = create_leaf("MyClient", cls.ca_cert, cls.ca_key)
        cls.chained_client_cert, _ = create_leaf("MyClient", cls.intermediate_cert, cls.intermediate_key)
        cls.impersonator_cert, _ = create_leaf("EvilMyClientImpersonator", cls.ca_cert, cls.ca_key)

        cls.rogue_ca_cert, cls.rogue_ca_key = create_ca("Test Root CA")
        cls.rogue_client_cert, _ = create_leaf("MyClient", cls.rogue_ca_cert, cls.rogue_ca_key)
        cls.rogue_impersonator_cert, _ = create_leaf(
            "EvilMyClientImpersonator", cls.rogue_ca_cert, cls.rogue_ca_key
        )

    def setUp(self):
        """Set up test fixtures."""
        self.anchors = TrustAnchors(certificates=(self.ca_cert,))
        self.validator = CertificateValidator(self.anchors)
        self.policy = SubjectAllowListPolicy(allowed_subjects=["CN=MyClient"])

    def test_valid_client_is_accepted(self):
        """A certificate from the anchor, in its validity window and on the allow-list is accepted."""
        verdict = self.validator.validate(self.client_cert, self.policy)

        self.assertTrue(verdict.accepted)
        self.assertIsNone(verdict.reason)
        self.assertEqual(verdict.peer.common_name, "MyClient")
        self.assertEqual(verdict.peer.issuer, "CN=Test Root CA")

    def test_chain_through_intermediate_is_accepted(self):
        """The path may run through intermediates the peer sent."""
        verdict = self.validator.validate(
            self.chained_client_cert, self.policy, intermediates=[self.intermediate_cert]
        )

        self.assertTrue(verdict.accepted)

    def test_missing_intermediate_is_untrusted(self):
        """Without the intermediate no path to the anchor exists."""
        verdict = self.validator.validate(self.chained_client_cert, self.policy)

        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.reason, RejectReason.UNTRUSTED_CHAIN)

    def test_untrusted_root_rejected_whatever_the_subject(self):
        """A chain ending at a root that only shares the anchor's name is untrusted."""
        for cert in (self.rogue_client_cert, self.rogue_impersonator_cert):
            with self.subTest(subject=cert.subject.rfc4514_string()):
                verdict = self.validator.validate(cert, self.policy)

                self.assertFalse(verdict.accepted)
                self.assertEqual(verdict.reason, RejectReason.UNTRUSTED_CHAIN)

    def test_self_signed_certificate_is_untrusted(self):
        """A self-signed certificate is never its own anchor."""
        cert, _ = create_self_signed("MyClient")

        verdict = self.validator.validate(cert, self.policy)

        self.assertEqual(verdict.reason, RejectReason.UNTRUSTED_CHAIN)

    def test_rogue_root_as_intermediate_is_untrusted(self):
        """Supplying a same-named root as an intermediate does not link it to the anchor."""
        verdict = self.validator.validate(
            self.rogue_client_cert, self.policy, intermediates=[self.rogue_ca_cert]
        )

        self.assertEqual(verdict.reason, RejectReason.UNTRUSTED_CHAIN)

    def test_impersonator_from_trusted_root_is_identity_mismatch(self):
        """A trusted chain does not excuse a subject off the allow-list."""
        verdict = self.validator.validate(self.impersonator_cert, self.policy)

        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.reason, RejectReason.IDENTITY_MISMATCH)
        self.assertEqual(verdict.peer.common_name, "EvilMyClientImpersonator")

    def test_expired_certificate(self):
        """A certificate past notAfter is Expired even when chained and allow-listed."""
        now = datetime.now(timezone.utc)
        cert, _ = create_leaf(
            "MyClient", self.ca_cert, self.ca_key,
            not_before=now - timedelta(days=30), not_after=now - timedelta(days=1)
        )

        verdict = self.validator.validate(cert, self.policy)

        self.assertEqual(verdict.reason, RejectReason.EXPIRED)

    def test_not_yet_valid_certificate(self):
        """A certificate before notBefore is NotYetValid even when chained and allow-listed."""
        now = datetime.now(timezone.utc)
        cert, _ = create_leaf(
            "MyClient", self.ca_cert, self.ca_key,
            not_before=now + timedelta(days=1), not_after=now + timedelta(days=30)
        )

        verdict = self.validator.validate(cert, self.policy)

        self.assertEqual(verdict.reason, RejectReason.NOT_YET_VALID)

    def test_validity_uses_supplied_time(self):
        """Validation is a function of the time it is given."""
        later = self.client_cert.not_valid_after_utc + timedelta(seconds=1)

        verdict = self.validator.validate(self.client_cert, self.policy, now=later)

        self.assertEqual(verdict.reason, RejectReason.EXPIRED)

    def test_expired_intermediate_rejects_the_leaf(self):
        """Every certificate on the path must be inside its validity window."""
        now = datetime.now(timezone.utc)
        expired_intermediate, intermediate_key = create_ca(
            "Expired Issuing CA", issuer_cert=self.ca_cert, issuer_key=self.ca_key,
            not_before=now - timedelta(days=30), not_after=now - timedelta(days=1)
        )
        leaf, _ = create_leaf("MyClient", expired_intermediate, intermediate_key)

        verdict = self.validator.validate(leaf, self.policy, intermediates=[expired_intermediate])

        self.assertEqual(verdict.reason, RejectReason.EXPIRED)

    def test_untrusted_takes_precedence_over_expiry(self):
        """Checks stop at the first failure, and the chain is checked first."""
        now = datetime.now(timezone.utc)
        cert, _ = create_leaf(
            "EvilMyClientImpersonator", self.rogue_ca_cert, self.rogue_ca_key,
            not_before=now - timedelta(days=30), not_after=now - timedelta(days=1)
        )

        verdict = self.validator.validate(cert, self.policy)

        self.assertEqual(verdict.reason, RejectReason.UNTRUSTED_CHAIN)

    def test_revoked_certificate_rejected(self):
        """A CRL listing the leaf's serial rejects it."""
        crl = create_crl(self.ca_cert, self.ca_key, revoked_serials=[self.client_cert.serial_number])
        validator = CertificateValidator(self.anchors, RevocationChecker([crl]))

        verdict = validator.validate(self.client_cert, self.policy)

        self.assertEqual(verdict.reason, RejectReason.REVOKED)

    def test_expiry_checked_before_revocation(self):
        """An expired and revoked certificate reports Expired."""
        now = datetime.now(timezone.utc)
        cert, _ = create_leaf(
            "MyClient", self.ca_cert, self.ca_key,
            not_before=now - timedelta(days=30), not_after=now - timedelta(days=1)
        )
        crl = create_crl(self.ca_cert, self.ca_key, revoked_serials=[cert.serial_number])
        validator = CertificateValidator(self.anchors, RevocationChecker([crl]))

        verdict = validator.validate(cert, self.policy)

        self.assertEqual(verdict.reason, RejectReason.EXPIRED)

    def test_repeated_validation_is_stable(self):
        """The same valid certificate is accepted every time."""
        for _ in range(20):
            self.assertTrue(self.validator.validate(self.client_cert, self.policy).accepted)

    def test_validate_der_chain(self):
        """DER chains as received from a handshake are parsed leaf first."""
        chain = [
            self.chained_client_cert.public_bytes(serialization.Encoding.DER),
            self.intermediate_cert.public_bytes(serialization.Encoding.DER),
        ]

        verdict = self.validator.validate_der(chain, self.policy)

        self.assertTrue(verdict.accepted)

    def test_validate_der_empty_chain(self):
        """No certificate at all is an untrusted chain."""
        verdict = self.validator.validate_der([], self.policy)

        self.assertEqual(verdict.reason, RejectReason.UNTRUSTED_CHAIN)
        self.assertIsNone(verdict.peer)

    def test_validate_der_malformed_certificate(self):
        """Garbage bytes are an untrusted chain, not an exception."""
        verdict = self.validator.validate_der([b'not a certificate'], self.policy)

        self.assertEqual(verdict.reason, RejectReason.UNTRUSTED_CHAIN)

    def test_unparsable_extension_is_untrusted(self):
        """A certificate whose extensions cannot be decoded is rejected, not raised."""
        with patch('mtls_demo.security.validator.PeerIdentity.from_certificate',
                   side_effect=ValueError("error parsing asn1 value")):
            verdict = self.validator.validate(self.client_cert, self.policy)

        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.reason, RejectReason.UNTRUSTED_CHAIN)
        self.assertIn("malformed peer certificate", verdict.detail)
        self.assertIsNone(verdict.peer)

    def test_build_path_returns_leaf_to_anchor(self):
        """The built path starts at the leaf and ends at the anchor."""
        path = self.validator.build_path(self.chained_client_cert, [self.intermediate_cert])

        self.assertEqual(path, [self.chained_client_cert, self.intermediate_cert, self.ca_cert])

    def test_build_path_raises_untrusted_chain(self):
        """build_path raises the typed error."""
        with self.assertRaises(UntrustedChain):
            self.validator.build_path(self.rogue_client_cert)


class TestSubjectAllowListPolicy(unittest.TestCase):
    """Test cases for SubjectAllowListPolicy."""

    @classmethod
    def setUpClass(cls):
        cls.ca_cert, cls.ca_key = create_ca("Test Root CA")

    def _cert(self, common_name):
        cert, _ = create_leaf(common_name, self.ca_cert, self.ca_key)
        return cert

    def test_exact_subject_match(self):
        """Allow-listed distinguished names match exactly."""
        policy = SubjectAllowListPolicy(allowed_subjects=["CN=MyClient"])

        policy.check(self._cert("MyClient"))

    def test_common_name_match(self):
        """Allow-listed common names match the certificate's single CN."""
        policy = SubjectAllowListPolicy(allowed_common_names=["MyClient"])

        policy.check(self._cert("MyClient"))

    def test_substring_never_matches(self):
        """A subject containing an allowed name is not that name."""
        policy = SubjectAllowListPolicy(allowed_subjects=["CN=MyClient"], allowed_common_names=["MyClient"])

        for common_name in ("EvilMyClientImpersonator", "MyClient2", "myclient", "MyClient "):
            with self.subTest(common_name=common_name):
                with self.assertRaises(IdentityMismatch):
                    policy.check(self._cert(common_name))

    def test_empty_policy_accepts_nothing(self):
        """No configured identities means no identity matches."""
        with self.assertRaises(IdentityMismatch):
            SubjectAllowListPolicy().check(self._cert("MyClient"))

    def test_invalid_distinguished_name(self):
        """Unparseable allow-list entries fail at construction."""
        with self.assertRaises(ValueError):
            SubjectAllowListPolicy(allowed_subjects=["not a dn"])

    def test_describe(self):
        policy = SubjectAllowListPolicy(allowed_subjects=["CN=MyClient"], allowed_common_names=["Other"])

        self.assertIn("CN=MyClient", policy.describe())
        self.assertIn("Other", policy.describe())


class TestHostnamePolicy(unittest.TestCase):
    """Test cases for HostnamePolicy."""

    @classmethod
    def setUpClass(cls):
        cls.ca_cert, cls.ca_key = create_ca("Test Root CA")
        cls.server_cert, _ = create_leaf(
            "server", cls.ca_cert, cls.ca_key,
            dns_names=["localhost", "*.example.com"], ip_addresses=["127.0.0.1"]
        )
        cls.cn_only_cert, _ = create_leaf("legacy.example.org", cls.ca_cert, cls.ca_key)

    def test_dns_name_match(self):
        HostnamePolicy("localhost").check(self.server_cert)
        HostnamePolicy("LOCALHOST").check(self.server_cert)

    def test_wildcard_match(self):
        HostnamePolicy("api.example.com").check(self.server_cert)

    def test_wildcard_covers_one_label_only(self):
        for hostname in ("example.com", "a.b.example.com"):
            with self.subTest(hostname=hostname):
                with self.assertRaises(IdentityMismatch):
                    HostnamePolicy(hostname).check(self.server_cert)

    def test_ip_address_match(self):
        HostnamePolicy("127.0.0.1").check(self.server_cert)

        with self.assertRaises(IdentityMismatch):
            HostnamePolicy("127.0.0.2").check(self.server_cert)

    def test_common_name_ignored_when_san_present(self):
        with self.assertRaises(IdentityMismatch):
            HostnamePolicy("server").check(self.server_cert)

    def test_common_name_fallback_without_san(self):
        HostnamePolicy("legacy.example.org").check(self.cn_only_cert)

        with self.assertRaises(IdentityMismatch):
            HostnamePolicy("other.example.org").check(self.cn_only_cert)

    def test_expected_hostname_required(self):
        with self.assertRaises(ValueError):
            HostnamePolicy("")

    def test_match_dns_name_rules(self):
        """Only a whole left-most wildcard label of a three-label or longer name is honored."""
        self.assertTrue(_match_dns_name("*.example.com", "www.example.com"))
        self.assertTrue(_match_dns_name("www.example.com.", "WWW.example.com"))
        self.assertFalse(_match_dns_name("*.com", "example.com"))
        self.assertFalse(_match_dns_name("w*.example.com", "www.example.com"))
        self.assertFalse(_match_dns_name("www.*.com", "www.example.com"))


if __name__ == '__main__':
    unittest.main()
