"""
Capability interfaces the lifecycle core needs from its collaborators.

storage.vault.VaultClient satisfies SecretStore and
acme_client.service.AcmeService satisfies AcmeAdapter; tests use
in-memory fakes.
"""
from __future__ import annotations

from typing import Optional, Protocol, Sequence

from lifecycle.models import AccountIdentity, CertificateBundle, Registration


class SecretStore(Protocol):
    def read(self, path: str) -> Optional[dict]:
        """Field map at *path*, None if not found. Raises SecretStoreError on I/O failure."""
        ...

    def write(self, path: str, fields: dict[str, str]) -> None:
        """Replace the record at *path*. Raises SecretStoreError on I/O failure."""
        ...


class AcmeAdapter(Protocol):
    def query_registration(self, identity: AccountIdentity) -> Registration:
        """Confirm the identity's registration reference. Raises AuthorityError."""
        ...

    def resolve_registration_by_key(self, identity: AccountIdentity) -> Registration:
        """Find an existing registration for the identity's key. Raises AuthorityError."""
        ...

    def register(self, identity: AccountIdentity) -> Registration:
        """Create a new registration (terms of service agreed). Raises AuthorityError."""
        ...

    def obtain_certificate(
        self,
        identity: AccountIdentity,
        domains: Sequence[str],
        challenge_provider: str,
        propagation_required: bool,
        dns_resolver: str,
    ) -> CertificateBundle:
        """Issue a bundled certificate. Raises ChallengeError or IssuanceError."""
        ...
