"""
ACME client adapter used by the lifecycle core.

Wraps the stateless AcmeClient with the four capabilities the account
reconciler and the reconciliation driver need:

  query_registration           POST {} to the stored account URL
  resolve_registration_by_key  newAccount with onlyReturnExisting
  register                     newAccount, terms of service agreed
  obtain_certificate           order → DNS-01 → finalize → download bundle

Authority rejections during registration become AuthorityError; failures
while proving domain control become ChallengeError; order, finalization and
download failures become IssuanceError.  Transport errors (requests) are not
translated.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from acme_client import jws as jwslib
from acme_client.client import AcmeClient, AcmeError, make_client
from acme_client.crypto import create_csr, generate_rsa_key, private_key_to_pem, split_pem_chain
from acme_client.dns_challenge import (
    DnsProvider,
    challenge_fqdn,
    compute_dns_txt_value,
    make_dns_provider,
    wait_for_propagation,
)
from lifecycle.errors import AuthorityError, ChallengeError, IssuanceError
from lifecycle.models import AccountIdentity, CertificateBundle, Registration

logger = logging.getLogger(__name__)

_DNS01 = "dns-01"


class AcmeService:
    """AcmeAdapter implementation backed by an RFC 8555 server."""

    def __init__(
        self,
        client: AcmeClient,
        eab_key_id: str = "",
        eab_hmac_key: str = "",
        provider_factory: Callable[[str], DnsProvider] = make_dns_provider,
        propagation_timeout: float = 120.0,
        propagation_interval: float = 2.0,
        poll_interval: float = 2.0,
    ) -> None:
        self.client = client
        self.eab_key_id = eab_key_id
        self.eab_hmac_key = eab_hmac_key
        self.provider_factory = provider_factory
        self.propagation_timeout = propagation_timeout
        self.propagation_interval = propagation_interval
        self.poll_interval = poll_interval

    # ── Registration ──────────────────────────────────────────────────────

    def query_registration(self, identity: AccountIdentity) -> Registration:
        if identity.registration is None or not identity.registration.uri:
            raise AuthorityError("account has no registration reference")

        uri = identity.registration.uri
        try:
            body, _ = self.client.get_account(identity.private_key, uri, self.client.get_nonce())
        except AcmeError as exc:
            raise AuthorityError(f"registration {uri} rejected: {exc}") from exc

        status = body.get("status", "valid")
        if status != "valid":
            raise AuthorityError(f"registration {uri} has status {status!r}")
        return Registration(uri=uri, body=body)

    def resolve_registration_by_key(self, identity: AccountIdentity) -> Registration:
        try:
            uri, body, _ = self.client.lookup_account(identity.private_key, self.client.get_nonce())
        except AcmeError as exc:
            raise AuthorityError(f"account lookup by key rejected: {exc}") from exc
        if not uri:
            raise AuthorityError("no account exists for this key")
        return Registration(uri=uri, body=body)

    def register(self, identity: AccountIdentity) -> Registration:
        try:
            uri, body, _ = self.client.create_account(
                identity.private_key,
                self.client.get_nonce(),
                email=identity.email,
                eab_key_id=self.eab_key_id,
                eab_hmac_key=self.eab_hmac_key,
            )
        except AcmeError as exc:
            raise AuthorityError(f"account registration rejected: {exc}") from exc
        if not uri:
            raise AuthorityError("account registration returned no account URL")
        logger.info("Registered new ACME account: %s", uri)
        return Registration(uri=uri, body=body)

    # ── Issuance ──────────────────────────────────────────────────────────

    def obtain_certificate(
        self,
        identity: AccountIdentity,
        domains: Sequence[str],
        challenge_provider: str,
        propagation_required: bool,
        dns_resolver: str,
    ) -> CertificateBundle:
        if identity.registration is None:
            raise IssuanceError("cannot order a certificate without a registered account")

        domains = list(domains)
        key = identity.private_key
        account_url = identity.registration.uri
        provider = self.provider_factory(challenge_provider)

        try:
            order, order_url, nonce = self.client.create_order(domains, key, account_url, self.client.get_nonce())
        except AcmeError as exc:
            raise IssuanceError(f"order for {domains[0]} rejected: {exc}") from exc
        logger.info("Order created for %s — %d authorization(s)", domains[0], len(order.get("authorizations", [])))

        nonce = self._complete_authorizations(
            order.get("authorizations", []), identity, provider, propagation_required, dns_resolver, nonce
        )

        cert_key = generate_rsa_key(key_size=2048)
        csr_der = create_csr(cert_key, domains)
        try:
            _, nonce = self.client.finalize_order(order["finalize"], csr_der, key, account_url, nonce)
            cert_url = self.client.poll_order_for_certificate(
                order_url, key, account_url, poll_interval=self.poll_interval
            )
            full_chain, _ = self.client.download_certificate(
                cert_url, key, account_url, nonce or self.client.get_nonce()
            )
        except (AcmeError, KeyError) as exc:
            raise IssuanceError(f"finalization failed for {domains[0]}: {exc}") from exc

        _, issuer_pem = split_pem_chain(full_chain)
        logger.info("Downloaded %d bytes of PEM for %s", len(full_chain), domains[0])
        return CertificateBundle(
            domains=domains,
            certificate=full_chain,
            private_key=private_key_to_pem(cert_key),
            issuer_certificate=issuer_pem,
        )

    def _complete_authorizations(
        self,
        auth_urls: list[str],
        identity: AccountIdentity,
        provider: DnsProvider,
        propagation_required: bool,
        dns_resolver: str,
        nonce: str,
    ) -> str:
        key = identity.private_key
        account_url = identity.registration.uri
        presented: list[tuple[str, str]] = []

        try:
            pending = []
            for auth_url in auth_urls:
                authz = self._call(ChallengeError, self.client.get_authorization, auth_url, key, account_url)
                if authz.get("status") == "valid":
                    logger.info("Authorization %s already valid — skipping challenge", auth_url)
                    continue

                domain = authz.get("identifier", {}).get("value", "")
                challenge = next(
                    (c for c in authz.get("challenges", []) if c.get("type") == _DNS01),
                    None,
                )
                if challenge is None:
                    raise ChallengeError(f"No {_DNS01} challenge offered for {domain} ({auth_url})")

                txt_value = compute_dns_txt_value(jwslib.compute_key_authorization(challenge["token"], key))
                provider.present(domain, txt_value)
                presented.append((domain, txt_value))
                pending.append((auth_url, challenge["url"], domain, txt_value))

            if propagation_required:
                for _, _, domain, txt_value in pending:
                    wait_for_propagation(
                        challenge_fqdn(domain),
                        txt_value,
                        dns_resolver,
                        timeout=self.propagation_timeout,
                        interval=self.propagation_interval,
                    )

            for auth_url, challenge_url, domain, _ in pending:
                logger.info("Triggering CA verification for %s", domain)
                _, nonce = self._call(
                    ChallengeError, self.client.respond_to_challenge, challenge_url, key, account_url, nonce
                )
                self._call(
                    ChallengeError,
                    self.client.poll_authorization,
                    auth_url,
                    key,
                    account_url,
                    poll_interval=self.poll_interval,
                )
                logger.info("Authorization for %s is VALID", domain)
        finally:
            for domain, txt_value in presented:
                try:
                    provider.cleanup(domain, txt_value)
                except Exception as exc:
                    logger.warning("Failed to clean up TXT record for %s: %s", domain, exc)

        return nonce

    @staticmethod
    def _call(error_cls, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except AcmeError as exc:
            raise error_cls(str(exc)) from exc


def make_service(settings=None, client: Optional[AcmeClient] = None) -> AcmeService:
    """Create an AcmeService from application settings."""
    if settings is None:
        from config import settings  # noqa: PLC0415

    return AcmeService(
        client=client or make_client(settings),
        eab_key_id=settings.ACME_EAB_KEY_ID,
        eab_hmac_key=settings.ACME_EAB_HMAC_KEY,
        provider_factory=lambda name: make_dns_provider(name, settings),
        propagation_timeout=settings.DNS_PROPAGATION_TIMEOUT_SECONDS,
        propagation_interval=settings.DNS_PROPAGATION_INTERVAL_SECONDS,
    )
