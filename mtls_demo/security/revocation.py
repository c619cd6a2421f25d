"""
Best-effort revocation checking against locally configured CRLs.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

from cryptography import x509

from .errors import Revoked

logger = logging.getLogger(__name__)


class RevocationChecker:
    """
    Check certificates on a validated path against certificate revocation lists.

    A positive revocation signal always rejects. When no usable CRL covers an
    issuer (none configured, stale, or not signed by that issuer) the check has
    failed rather than passed: with soft_fail the failure is logged and ignored,
    otherwise the certificate is rejected as Revoked.
    """

    def __init__(self, crls: Iterable[x509.CertificateRevocationList], soft_fail: bool = True):
        self.crls = tuple(crls)
        self.soft_fail = soft_fail

    def check_path(self, path: Sequence[x509.Certificate], now: datetime) -> None:
        """
        Check every certificate on the path except the trust anchor.

        Args:
            path: Certificates ordered leaf first, trust anchor last
            now: Time used to judge CRL freshness

        Raises:
            Revoked: On a revoked certificate, or a failed check with soft_fail disabled
        """
        for cert, issuer in zip(path, path[1:]):
            self._check_one(cert, issuer, now)

    def _check_one(self, cert: x509.Certificate, issuer: x509.Certificate, now: datetime) -> None:
        subject = cert.subject.rfc4514_string()
        crl = self._find_crl(issuer, now)

        if crl is None:
            message = f"No usable CRL from {issuer.subject.rfc4514_string()}"
            if self.soft_fail:
                logger.warning(f"Revocation check skipped for {subject}: {message}")
                return
            raise Revoked(f"revocation status unavailable ({message})", subject=subject)

        revoked = crl.get_revoked_certificate_by_serial_number(cert.serial_number)
        if revoked is not None:
            raise Revoked(
                f"serial {cert.serial_number:x} revoked on {revoked.revocation_date_utc.isoformat()}",
                subject=subject
            )

    def _find_crl(self, issuer: x509.Certificate, now: datetime) -> Optional[x509.CertificateRevocationList]:
        """Find a current CRL issued and signed by the given issuer."""
        for crl in self.crls:
            if crl.issuer != issuer.subject:
                continue
            try:
                if not crl.is_signature_valid(issuer.public_key()):
                    logger.debug(f"Ignoring CRL with bad signature for {issuer.subject.rfc4514_string()}")
                    continue
            except TypeError:
                continue
            next_update = crl.next_update_utc
            if next_update is not None and next_update < now:
                logger.debug(f"Ignoring stale CRL for {issuer.subject.rfc4514_string()}")
                continue
            return crl
        return None
