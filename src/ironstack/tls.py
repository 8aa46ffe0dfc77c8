"""Remote TLS certificate probes.

Certificates are issued and renewed by Caddy; ironstack only inspects what a
domain actually serves. A probe performs two handshakes: an unverified one to
read whatever certificate the server presents, and a verified one against the
``certifi`` CA bundle to decide whether browsers would trust it. Probes never
raise for remote conditions; the outcome is reported as a status.
"""
from __future__ import annotations

import socket
import ssl
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import certifi
from cryptography import x509


# Handshake alerts a server sends when it holds no certificate for the requested
# name. Caddy answers an unknown SNI name with an internal-error alert.
NO_CERTIFICATE_ALERTS = frozenset(
    {
        "SSLV3_ALERT_HANDSHAKE_FAILURE",
        "TLSV1_ALERT_UNRECOGNIZED_NAME",
        "TLSV1_UNRECOGNIZED_NAME",
        "TLSV1_ALERT_INTERNAL_ERROR",
    }
)


class CertificateStatus(Enum):
    """Outcome of probing a domain."""

    VALID = "valid"
    UNTRUSTED = "untrusted"
    EXPIRED = "expired"
    ABSENT = "absent"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class CertificateProbe:
    """Certificate details observed for one domain."""

    domain: str
    status: CertificateStatus
    issuer: str | None = None
    subject: str | None = None
    not_valid_before: datetime | None = None
    not_valid_after: datetime | None = None
    days_remaining: int | None = None
    error: str | None = None

    @property
    def is_valid(self) -> bool:
        """Return True when the certificate is trusted and current."""
        return self.status is CertificateStatus.VALID

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the probe."""
        return {
            "domain": self.domain,
            "status": self.status.value,
            "issuer": self.issuer,
            "subject": self.subject,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
            "days_remaining": self.days_remaining,
            "error": self.error,
        }


@dataclass
class TLSProbe:
    """Inspect the certificate a domain serves."""

    port: int = 443
    timeout: float = 5.0
    ca_file: str = field(default_factory=certifi.where)

    def fetch_certificate(self, domain: str) -> bytes | None:
        """Return the DER certificate presented for *domain* without verifying it."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        with socket.create_connection((domain, self.port), timeout=self.timeout) as sock:
            with context.wrap_socket(sock, server_hostname=domain) as tls:
                return tls.getpeercert(binary_form=True)

    def verify(self, domain: str) -> str | None:
        """Return ``None`` when *domain* passes a verified handshake, else the reason."""
        context = ssl.create_default_context(cafile=self.ca_file)
        try:
            with socket.create_connection((domain, self.port), timeout=self.timeout) as sock:
                with context.wrap_socket(sock, server_hostname=domain):
                    return None
        except ssl.SSLCertVerificationError as exc:
            return exc.verify_message or str(exc)
        except ssl.SSLError as exc:
            return str(exc)

    def probe(self, domain: str, *, now: datetime | None = None) -> CertificateProbe:
        """Probe *domain* and classify its certificate."""
        try:
            der = self.fetch_certificate(domain)
        except ssl.SSLError as exc:
            status = (
                CertificateStatus.ABSENT
                if getattr(exc, "reason", None) in NO_CERTIFICATE_ALERTS
                else CertificateStatus.UNREACHABLE
            )
            return CertificateProbe(domain=domain, status=status, error=str(exc))
        except OSError as exc:
            return CertificateProbe(
                domain=domain, status=CertificateStatus.UNREACHABLE, error=str(exc)
            )
        if not der:
            return CertificateProbe(domain=domain, status=CertificateStatus.ABSENT)

        try:
            certificate = x509.load_der_x509_certificate(der)
        except ValueError as exc:
            return CertificateProbe(
                domain=domain, status=CertificateStatus.UNTRUSTED, error=f"Unparseable certificate: {exc}"
            )

        current = now or datetime.now(tz=UTC)
        not_before = certificate.not_valid_before_utc
        not_after = certificate.not_valid_after_utc
        details = {
            "domain": domain,
            "issuer": certificate.issuer.rfc4514_string(),
            "subject": certificate.subject.rfc4514_string(),
            "not_valid_before": not_before,
            "not_valid_after": not_after,
            "days_remaining": (not_after - current).days,
        }
        if not_after <= current:
            return CertificateProbe(status=CertificateStatus.EXPIRED, **details)
        if not_before > current:
            return CertificateProbe(
                status=CertificateStatus.UNTRUSTED, error="Certificate is not yet valid.", **details
            )

        try:
            error = self.verify(domain)
        except OSError as exc:
            return CertificateProbe(status=CertificateStatus.UNREACHABLE, error=str(exc), **details)
        if error:
            return CertificateProbe(status=CertificateStatus.UNTRUSTED, error=error, **details)
        return CertificateProbe(status=CertificateStatus.VALID, **details)

    def expiring(
        self,
        domains: Iterable[str],
        within_days: int,
        *,
        now: datetime | None = None,
    ) -> list[CertificateProbe]:
        """Return probes whose certificate expires within *within_days* (or already has)."""
        results: list[CertificateProbe] = []
        for domain in domains:
            probe = self.probe(domain, now=now)
            if probe.days_remaining is not None and probe.days_remaining <= within_days:
                results.append(probe)
        return sorted(results, key=lambda item: item.days_remaining or 0)


__all__ = ["CertificateProbe", "CertificateStatus", "TLSProbe"]
