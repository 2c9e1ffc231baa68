"""
Account reconciler — keeps the stored ACME account identity consistent with
the authority's registration record.

State machine over {local registration reference, server confirmation}:

  REGISTERED        the authority confirmed our registration reference → no-op
  REGISTERED_STALE  we hold a reference but the authority rejected it  → recover
  UNREGISTERED      we hold no reference at all                         → recover

Recovery:
  resolve by key succeeds            → ADOPT_RESOLVED (persist account)
  resolve fails, re-register allowed → REREGISTER     (persist account)
  resolve fails, re-register denied  → DENY           (RegistrationNotFound)

The account key is stored separately from the account record and the two may
diverge in presence: a stored key is always reused, a missing key is only
generated when re-registration is allowed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from josepy.jwk import JWK

from acme_client import jws as jwslib
from lifecycle.contracts import AcmeAdapter, SecretStore
from lifecycle.errors import (
    AuthorityError,
    KeyProvisioningDenied,
    RegistrationNotFound,
)
from lifecycle.models import (
    ACCOUNT_PATH,
    KEY_PATH,
    AccountIdentity,
    CertificateBundle,
)
from storage.records import decode_account, decode_key

logger = logging.getLogger(__name__)


class AccountState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED_STALE = "registered_stale"
    REGISTERED = "registered"


class RecoveryAction(str, Enum):
    ADOPT_RESOLVED = "adopt_resolved"
    REREGISTER = "reregister"
    DENY = "deny"


# ─── Pure transitions ─────────────────────────────────────────────────────────


def account_state(identity: AccountIdentity, confirmed: bool) -> AccountState:
    """Classify the identity after querying the authority."""
    if confirmed:
        return AccountState.REGISTERED
    if identity.registration is None:
        return AccountState.UNREGISTERED
    return AccountState.REGISTERED_STALE


def recovery_action(resolved_by_key: bool, allow_reregister: bool) -> RecoveryAction:
    """Decide how to recover an identity the authority did not confirm."""
    if resolved_by_key:
        return RecoveryAction.ADOPT_RESOLVED
    if allow_reregister:
        return RecoveryAction.REREGISTER
    return RecoveryAction.DENY


# ─── Session handle ───────────────────────────────────────────────────────────


@dataclass
class AcmeSession:
    """An ACME adapter bound to a reconciled account identity."""

    adapter: AcmeAdapter
    identity: AccountIdentity

    def obtain_certificate(
        self,
        domains: Sequence[str],
        challenge_provider: str,
        propagation_required: bool,
        dns_resolver: str,
    ) -> CertificateBundle:
        return self.adapter.obtain_certificate(
            self.identity,
            domains,
            challenge_provider,
            propagation_required,
            dns_resolver,
        )


# ─── Reconciliation ───────────────────────────────────────────────────────────


def ensure_account(
    store: SecretStore,
    acme: AcmeAdapter,
    email: str,
    allow_reregister: bool,
    key_type: str = "ec",
) -> AcmeSession:
    """
    Load (or create) the account identity and make sure the authority knows it.

    Writes to the store only when something changed: a freshly generated key,
    or a resolved / newly registered account.  A consistent identity causes
    no writes at all.

    Raises:
      SecretStoreError       — store I/O failure (transient, propagated unchanged)
      CorruptRecordError     — account or key record has the wrong shape
      KeyProvisioningDenied  — no key stored and re-registration is disabled
      RegistrationNotFound   — authority has no account for our key and
                               re-registration is disabled
      AuthorityError         — re-registration itself was rejected
    """
    identity = load_identity(store, email, allow_reregister, key_type)
    session = AcmeSession(adapter=acme, identity=identity)

    logger.debug("Checking ACME account registration")
    try:
        acme.query_registration(identity)
        confirmed = True
    except AuthorityError as exc:
        logger.warning("ACME registration not found: %s", exc)
        confirmed = False

    state = account_state(identity, confirmed)
    if state is AccountState.REGISTERED:
        logger.debug("ACME account is registered correctly")
        return session

    _recover(store, acme, identity, allow_reregister)
    return session


def load_identity(
    store: SecretStore,
    email: str,
    allow_reregister: bool,
    key_type: str = "ec",
) -> AccountIdentity:
    """Build the local identity from the account and key records."""
    stored = decode_account(store.read(ACCOUNT_PATH)).unwrap()
    key = _load_or_create_key(store, allow_reregister, key_type)

    if stored is None:
        logger.info("No ACME account stored — starting a fresh identity for %s", email)
        return AccountIdentity(email=email, private_key=key)

    if stored.email and stored.email != email:
        logger.warning(
            "Stored ACME account email %s differs from configured %s — keeping the stored one",
            stored.email,
            email,
        )
    return AccountIdentity(
        email=stored.email or email,
        private_key=key,
        registration=stored.registration,
    )


def _load_or_create_key(store: SecretStore, allow_reregister: bool, key_type: str) -> JWK:
    key = decode_key(store.read(KEY_PATH)).unwrap()
    if key is not None:
        return key

    if not allow_reregister:
        raise KeyProvisioningDenied("account key not found and re-registering is disabled")

    logger.info("No ACME account key stored — generating a new %s key", key_type.upper())
    key = jwslib.generate_account_key(key_type=key_type)
    save_key(store, key)
    return key


def _recover(
    store: SecretStore,
    acme: AcmeAdapter,
    identity: AccountIdentity,
    allow_reregister: bool,
) -> None:
    try:
        registration = acme.resolve_registration_by_key(identity)
        resolved = True
    except AuthorityError as exc:
        logger.warning("Could not resolve ACME account by key: %s", exc)
        registration = None
        resolved = False

    action = recovery_action(resolved, allow_reregister)

    if action is RecoveryAction.DENY:
        raise RegistrationNotFound(
            "account registration not found and re-registering is disabled"
        )

    if action is RecoveryAction.REREGISTER:
        logger.info("Re-registering ACME account for %s", identity.email)
        identity.registration = None
        registration = acme.register(identity)
    else:
        logger.info("ACME account resolved by key: %s", registration.uri)

    identity.registration = registration
    save_account(store, identity)


def save_account(store: SecretStore, identity: AccountIdentity) -> None:
    logger.info("Saving ACME account")
    store.write(ACCOUNT_PATH, {"account": identity.to_json()})


def save_key(store: SecretStore, key: JWK) -> None:
    logger.info("Saving ACME account key")
    store.write(KEY_PATH, {"pem": jwslib.account_key_to_pem(key)})
