"""
Typed decoding of secret store records.

Every read from the store is turned into a `Decoded` result that tells the
three outcomes apart:

  NOT_FOUND  — the path was never provisioned (store returned None)
  MALFORMED  — something is stored there but it does not have the expected shape
  FOUND      — the record decoded cleanly; `value` holds the typed object

Callers branch on `state`; `unwrap()` turns MALFORMED into CorruptRecordError.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Mapping, Optional, TypeVar

from cryptography.exceptions import UnsupportedAlgorithm
from josepy.jwk import JWK

from acme_client import jws as jwslib
from lifecycle.errors import CorruptRecordError
from lifecycle.models import (
    ACCOUNT_PATH,
    KEY_PATH,
    AccountIdentity,
    CertificateBundle,
    DomainGroup,
    Registration,
)

T = TypeVar("T")


class RecordState(str, Enum):
    FOUND = "found"
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Decoded(Generic[T]):
    path: str
    state: RecordState
    value: Optional[T] = None
    problem: str = ""

    @property
    def found(self) -> bool:
        return self.state is RecordState.FOUND

    @property
    def missing(self) -> bool:
        return self.state is RecordState.NOT_FOUND

    def unwrap(self) -> Optional[T]:
        """Return the value (None when not found); raise CorruptRecordError when malformed."""
        if self.state is RecordState.MALFORMED:
            raise CorruptRecordError(self.path, self.problem)
        return self.value


@dataclass(frozen=True)
class StoredAccount:
    """The account record without its key (the key lives at a separate path)."""

    email: str
    registration: Optional[Registration]


def _string_field(path: str, fields: Mapping, name: str) -> tuple[Optional[str], Optional[Decoded]]:
    value = fields.get(name)
    if not isinstance(value, str) or not value:
        return None, Decoded(path, RecordState.MALFORMED, problem=f"field {name!r} is missing or not a string")
    return value, None


def decode_account(fields: Optional[Mapping]) -> Decoded[StoredAccount]:
    if fields is None:
        return Decoded(ACCOUNT_PATH, RecordState.NOT_FOUND)
    raw, bad = _string_field(ACCOUNT_PATH, fields, "account")
    if bad:
        return bad
    try:
        email, registration = AccountIdentity.parse_json(raw)
    except ValueError as exc:
        return Decoded(ACCOUNT_PATH, RecordState.MALFORMED, problem=str(exc))
    return Decoded(ACCOUNT_PATH, RecordState.FOUND, StoredAccount(email=email, registration=registration))


def decode_key(fields: Optional[Mapping]) -> Decoded[JWK]:
    if fields is None:
        return Decoded(KEY_PATH, RecordState.NOT_FOUND)
    pem, bad = _string_field(KEY_PATH, fields, "pem")
    if bad:
        return bad
    try:
        key = jwslib.load_account_key_pem(pem)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        return Decoded(KEY_PATH, RecordState.MALFORMED, problem=f"key cannot be used: {exc}")
    return Decoded(KEY_PATH, RecordState.FOUND, key)


def decode_certificate(group: DomainGroup, fields: Optional[Mapping]) -> Decoded[CertificateBundle]:
    path = group.storage_path
    if fields is None:
        return Decoded(path, RecordState.NOT_FOUND)
    try:
        bundle = CertificateBundle.from_record(dict(fields))
    except ValueError as exc:
        return Decoded(path, RecordState.MALFORMED, problem=str(exc))
    return Decoded(path, RecordState.FOUND, bundle)
