"""
Error taxonomy for the certificate lifecycle core.

Per-domain errors (ChallengeError, IssuanceError, CorruptRecordError on a
certificate path) are caught by the reconciliation driver and recorded.
Account errors are fatal for the whole run.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lifecycle.renewal import RenewalDecision


class CertificatorError(Exception):
    """Base class for every error raised by this project."""


class ConfigurationError(CertificatorError):
    """Process configuration is missing or invalid."""


class SecretStoreError(CertificatorError):
    """I/O or authentication failure talking to the secret store."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CorruptRecordError(CertificatorError):
    """A record exists at a known path but does not have the expected shape."""

    def __init__(self, path: str, problem: str) -> None:
        self.path = path
        self.problem = problem
        super().__init__(f"record at {path!r} is corrupt: {problem}")


class KeyProvisioningDenied(CertificatorError):
    """The account key is missing and re-registration is disabled."""


class RegistrationNotFound(CertificatorError):
    """The authority has no registration for our key and re-registration is disabled."""


class AuthorityError(CertificatorError):
    """The ACME authority rejected a registration query, lookup or request."""


class ChallengeError(CertificatorError):
    """DNS-01 challenge provisioning or validation failed."""


class IssuanceError(CertificatorError):
    """Order creation, finalization or certificate download failed."""


class InvalidBundleShape(CertificatorError):
    """
    The stored bundle starts with a CA certificate.

    Carries the reissue decision so callers can both surface the diagnostic
    and proceed with the reissue.
    """

    def __init__(self, domain: str, decision: "RenewalDecision") -> None:
        self.domain = domain
        self.decision = decision
        super().__init__(f"certificate bundle for {domain} starts with a CA certificate")
