"""
In-memory model of the records the lifecycle core reasons about.

Secret store layout (paths are relative to the configured KV prefix):
  account                    → {"account": <AccountIdentity JSON>}
  key                        → {"pem": <account private key PEM>}
  certificates/<canonical>   → {"certificate", "private_key", "issuer_certificate"}

The account JSON mirrors the layout already found in existing stores:
  {"Email": "ops@example.com", "Registration": {"body": {...}, "uri": "https://..."}}
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from cryptography import x509
from josepy.jwk import JWK

ACCOUNT_PATH = "account"
KEY_PATH = "key"
CERTIFICATES_PREFIX = "certificates/"


def certificate_path(domain: str) -> str:
    """Logical secret store path of the bundle for a canonical domain."""
    return CERTIFICATES_PREFIX + domain


# ─── Account identity ─────────────────────────────────────────────────────────


@dataclass
class Registration:
    """Server-side registration reference: the account URL plus its last known body."""

    uri: str
    body: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"body": self.body, "uri": self.uri}

    @classmethod
    def from_dict(cls, data: dict) -> "Registration":
        uri = data.get("uri")
        if not isinstance(uri, str) or not uri:
            raise ValueError("registration has no uri")
        body = data.get("body") or {}
        if not isinstance(body, dict):
            raise ValueError("registration body is not an object")
        return cls(uri=uri, body=body)


@dataclass
class AccountIdentity:
    """
    Local ACME credential: email + signing key + registration reference.

    `registration` is None until the authority has accepted the account, and
    must never be trusted without confirming it against the authority.
    """

    email: str
    private_key: JWK
    registration: Optional[Registration] = None

    def to_json(self) -> str:
        """Serialize everything except the key (which lives at its own path)."""
        return json.dumps(
            {
                "Email": self.email,
                "Registration": self.registration.to_dict() if self.registration else None,
            }
        )

    @staticmethod
    def parse_json(raw: str) -> tuple[str, Optional[Registration]]:
        """Parse an account record into (email, registration). Raises ValueError."""
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("account record is not a JSON object")
        email = data.get("Email", "")
        if not isinstance(email, str):
            raise ValueError("account email is not a string")
        reg = data.get("Registration")
        if reg is None:
            return email, None
        if not isinstance(reg, dict):
            raise ValueError("account registration is not an object")
        return email, Registration.from_dict(reg)


# ─── Certificate bundle ───────────────────────────────────────────────────────


@dataclass
class CertificateBundle:
    """
    A certificate as stored for one domain group.

    `certificate` holds the leaf first, optionally followed by the issuer
    chain (the authority is asked for a bundle).  The bundle is only ever
    replaced wholesale.
    """

    domains: List[str]
    certificate: str
    private_key: str
    issuer_certificate: str = ""
    _leaf: Optional[x509.Certificate] = field(default=None, init=False, repr=False, compare=False)

    @property
    def leaf(self) -> x509.Certificate:
        """The first certificate of the PEM bundle."""
        if self._leaf is None:
            certs = x509.load_pem_x509_certificates(self.certificate.encode())
            self._leaf = certs[0]
        return self._leaf

    @property
    def dns_names(self) -> List[str]:
        """DNS names from the leaf's SubjectAlternativeName extension."""
        try:
            san = self.leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return []
        return san.value.get_values_for_type(x509.DNSName)

    @property
    def not_after(self) -> datetime:
        try:
            return self.leaf.not_valid_after_utc
        except AttributeError:
            return self.leaf.not_valid_after.replace(tzinfo=timezone.utc)

    @property
    def is_ca(self) -> bool:
        try:
            constraints = self.leaf.extensions.get_extension_for_class(x509.BasicConstraints)
        except x509.ExtensionNotFound:
            return False
        return bool(constraints.value.ca)

    @property
    def canonical_domain(self) -> str:
        return self.domains[0] if self.domains else ""

    def to_record(self) -> dict[str, str]:
        return {
            "certificate": self.certificate,
            "private_key": self.private_key,
            "issuer_certificate": self.issuer_certificate,
        }

    @classmethod
    def from_record(cls, fields: dict[str, Any], domains: Optional[List[str]] = None) -> "CertificateBundle":
        """
        Build a bundle from a stored field map.

        Raises ValueError if the map lacks a certificate or it cannot be parsed.
        When *domains* is not given, the leaf's DNS names are used.
        """
        cert = fields.get("certificate")
        if not isinstance(cert, str) or "BEGIN CERTIFICATE" not in cert:
            raise ValueError("missing or non-PEM 'certificate' field")
        private_key = fields.get("private_key", "")
        issuer = fields.get("issuer_certificate", "")
        if not isinstance(private_key, str) or not isinstance(issuer, str):
            raise ValueError("'private_key' and 'issuer_certificate' must be strings")

        bundle = cls(
            domains=list(domains or []),
            certificate=cert,
            private_key=private_key,
            issuer_certificate=issuer,
        )
        # Force a parse so corrupt PEM surfaces here rather than mid-decision.
        bundle.leaf
        if not bundle.domains:
            bundle.domains = bundle.dns_names
        return bundle


# ─── Domain groups ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DomainGroup:
    """One configured certificate: a comma-joined list whose first entry is canonical."""

    domains: tuple[str, ...]

    @classmethod
    def parse(cls, raw: str) -> "DomainGroup":
        # repeated names collapse, first occurrence keeps its position
        domains = tuple(dict.fromkeys(d.strip() for d in raw.split(",") if d.strip()))
        if not domains:
            raise ValueError(f"empty domain group: {raw!r}")
        return cls(domains=domains)

    @property
    def canonical(self) -> str:
        return self.domains[0]

    @property
    def storage_path(self) -> str:
        return certificate_path(self.canonical)

    def __str__(self) -> str:
        return ",".join(self.domains)
