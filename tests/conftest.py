"""
Shared pytest fixtures.

In-memory collaborators
-----------------------
`FakeStore` is a dict-backed secret store that records every write, and
`FakeAcme` is a scripted ACME adapter.  Together they let the account
reconciler and the reconciliation driver run without Vault or a CA.

`make_cert` builds real PEM certificates with `cryptography` so the renewal
policy parses exactly what a CA would return.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from acme_client import jws as jwslib
from lifecycle.errors import AuthorityError, SecretStoreError
from lifecycle.models import AccountIdentity, CertificateBundle, Registration

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
ACCOUNT_URL = "https://acme.test/acct/1"


# ─── Certificates ─────────────────────────────────────────────────────────────


def make_cert(
    domains: list[str],
    days: float = 90,
    is_ca: bool = False,
    now: datetime = NOW,
) -> tuple[str, str]:
    """Return (certificate_pem, private_key_pem) valid for *days* from *now*."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0] if domains else "ca.test")])
    not_after = now + timedelta(days=days)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(min(now, not_after) - timedelta(days=1))
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if domains:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
    cert = builder.sign(key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return cert_pem, key_pem


def make_bundle(domains: list[str], days: float = 90, is_ca: bool = False, now: datetime = NOW) -> CertificateBundle:
    cert_pem, key_pem = make_cert(domains, days=days, is_ca=is_ca, now=now)
    return CertificateBundle(domains=list(domains), certificate=cert_pem, private_key=key_pem)


# ─── Fake secret store ────────────────────────────────────────────────────────


class FakeStore:
    """Dict-backed SecretStore recording writes in order."""

    def __init__(self, records: Optional[dict] = None) -> None:
        self.records: dict[str, dict] = dict(records or {})
        self.writes: list[tuple[str, dict]] = []
        self.fail_reads: set[str] = set()
        self.fail_writes: set[str] = set()

    def read(self, path: str) -> Optional[dict]:
        if path in self.fail_reads:
            raise SecretStoreError(f"read of {path} failed", 500)
        record = self.records.get(path)
        return dict(record) if record is not None else None

    def write(self, path: str, fields: dict) -> None:
        if path in self.fail_writes:
            raise SecretStoreError(f"write of {path} failed", 500)
        self.records[path] = dict(fields)
        self.writes.append((path, dict(fields)))

    @property
    def written_paths(self) -> list[str]:
        return [path for path, _ in self.writes]


# ─── Fake ACME adapter ────────────────────────────────────────────────────────


class FakeAcme:
    """
    Scripted AcmeAdapter.

    `known` is the set of account URLs the authority accepts; `key_accounts`
    maps an account key thumbprint to the URL resolve-by-key returns.
    """

    def __init__(self, known: Optional[set] = None, now: datetime = NOW) -> None:
        self.known: set[str] = set(known or ())
        self.key_accounts: dict[str, str] = {}
        self.register_error: Optional[Exception] = None
        self.issue_errors: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self.now = now
        self._next_account = 100

    def query_registration(self, identity: AccountIdentity) -> Registration:
        self.calls.append(("query", identity.registration.uri if identity.registration else None))
        if identity.registration is None or identity.registration.uri not in self.known:
            raise AuthorityError("account does not exist")
        return identity.registration

    def resolve_registration_by_key(self, identity: AccountIdentity) -> Registration:
        self.calls.append(("resolve",))
        uri = self.key_accounts.get(jwslib.compute_jwk_thumbprint(identity.private_key))
        if uri is None:
            raise AuthorityError("no account for this key")
        return Registration(uri=uri, body={"status": "valid"})

    def register(self, identity: AccountIdentity) -> Registration:
        self.calls.append(("register", identity.email))
        if self.register_error is not None:
            raise self.register_error
        uri = f"https://acme.test/acct/{self._next_account}"
        self._next_account += 1
        self.known.add(uri)
        self.key_accounts[jwslib.compute_jwk_thumbprint(identity.private_key)] = uri
        return Registration(uri=uri, body={"status": "valid", "contact": [f"mailto:{identity.email}"]})

    def obtain_certificate(self, identity, domains, challenge_provider, propagation_required, dns_resolver):
        domains = list(domains)
        self.calls.append(("obtain", tuple(domains), challenge_provider, propagation_required, dns_resolver))
        if domains[0] in self.issue_errors:
            raise self.issue_errors[domains[0]]
        return make_bundle(domains, days=90, now=self.now)

    @property
    def obtained(self) -> list[tuple[str, ...]]:
        return [call[1] for call in self.calls if call[0] == "obtain"]


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def acme() -> FakeAcme:
    return FakeAcme()


@pytest.fixture(scope="session")
def ec_account_key():
    return jwslib.generate_account_key("ec")


@pytest.fixture(scope="session")
def rsa_account_key():
    return jwslib.generate_account_key("rsa", key_size=2048)
