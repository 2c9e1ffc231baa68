"""
Low-level ACME RFC 8555 HTTP client.

This client is intentionally **stateless**: account key, account URL and
nonces are passed in by the caller (acme_client/service.py), making it easy
to test with mock HTTP.

RFC 8555 compliance notes
--------------------------
* POST-as-GET: orders, authorizations and certificates are fetched with a
  signed empty payload, not plain GET.
* badNonce retry: ACME servers (including Pebble, which rejects 5 % of nonces
  intentionally) return a fresh `Replay-Nonce` header even on error responses.
  `_post_signed` automatically retries up to `_NONCE_RETRIES` times.
"""
from __future__ import annotations

import base64
import time
from typing import Optional

import requests
from josepy.jwk import JWK

from acme_client import jws as jwslib

_NONCE_RETRIES = 3


class AcmeError(Exception):
    """Raised when the ACME server returns an error response."""

    def __init__(self, status_code: int, body: dict, new_nonce: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.new_nonce = new_nonce
        problem_type = body.get("type", "unknown")
        detail = body.get("detail", str(body))
        super().__init__(f"ACME {status_code}: {problem_type} — {detail}")

    @property
    def problem_type(self) -> str:
        return self.body.get("type", "")


class AcmeClient:
    """Implements the RFC 8555 requests used by the certificate lifecycle."""

    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self._directory: Optional[dict] = None
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "certificator/1.0"})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Directory & nonce ─────────────────────────────────────────────────

    def get_directory(self) -> dict:
        """GET /directory — discover ACME endpoint URLs (cached per client)."""
        if self._directory is None:
            resp = self._session.get(self.directory_url, timeout=self.timeout)
            resp.raise_for_status()
            self._directory = resp.json()
        return self._directory

    def get_nonce(self, directory: dict | None = None) -> str:
        """HEAD /newNonce — fetch a fresh anti-replay nonce."""
        directory = directory or self.get_directory()
        resp = self._session.head(directory["newNonce"], timeout=self.timeout)
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError(resp.status_code, {"detail": "No Replay-Nonce header"})
        return nonce

    # ── Account ───────────────────────────────────────────────────────────

    def create_account(
        self,
        account_key: JWK,
        nonce: str,
        email: str = "",
        eab_key_id: str = "",
        eab_hmac_key: str = "",
    ) -> tuple[str, dict, str]:
        """
        POST /newAccount agreeing to the terms of service, with EAB binding
        when credentials are provided.
        Returns (account_url, account_body, new_nonce).
        """
        directory = self.get_directory()
        new_account_url = directory["newAccount"]
        payload: dict = {"termsOfServiceAgreed": True}
        if email:
            payload["contact"] = [f"mailto:{email}"]

        if eab_key_id and eab_hmac_key:
            payload["externalAccountBinding"] = jwslib.create_eab_jws(
                account_key, eab_key_id, eab_hmac_key, new_account_url
            )

        resp = self._post_signed(payload, account_key, nonce, new_account_url)
        return resp.headers.get("Location", ""), _json_or_empty(resp), resp.headers.get("Replay-Nonce", "")

    def lookup_account(
        self,
        account_key: JWK,
        nonce: str,
    ) -> tuple[Optional[str], dict, str]:
        """
        POST /newAccount with onlyReturnExisting=True.
        Returns (account_url or None, account_body, new_nonce).
        """
        new_account_url = self.get_directory()["newAccount"]
        try:
            resp = self._post_signed({"onlyReturnExisting": True}, account_key, nonce, new_account_url)
            return resp.headers.get("Location"), _json_or_empty(resp), resp.headers.get("Replay-Nonce", "")
        except AcmeError as e:
            if e.status_code in (400, 403, 404):
                return None, {}, e.new_nonce
            raise

    def get_account(
        self,
        account_key: JWK,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST {} to the account URL (RFC 8555 §7.3.2) — returns the server's
        view of the account.  Returns (account_body, new_nonce).
        """
        resp = self._post_signed({}, account_key, nonce, account_url, account_url)
        return _json_or_empty(resp), resp.headers.get("Replay-Nonce", "")

    # ── Orders ────────────────────────────────────────────────────────────

    def create_order(
        self,
        domains: list[str],
        account_key: JWK,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str, str]:
        """
        POST /newOrder — create a certificate order for one or more domains.
        Returns (order_body, order_url, new_nonce).
        """
        new_order_url = self.get_directory()["newOrder"]
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp = self._post_signed(payload, account_key, nonce, new_order_url, account_url)
        return resp.json(), resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    def get_order(self, order_url: str, account_key: JWK, account_url: str) -> dict:
        """Fetch an order object with POST-as-GET."""
        resp = self._post_signed(None, account_key, self.get_nonce(), order_url, account_url)
        return resp.json()

    # ── Authorizations & challenges ───────────────────────────────────────

    def get_authorization(self, auth_url: str, account_key: JWK, account_url: str) -> dict:
        """
        Fetch an authorization object with POST-as-GET (RFC 8555 §7.4.1).

        A fresh nonce is fetched internally so the caller doesn't have to
        thread it through every poll iteration.
        """
        resp = self._post_signed(None, account_key, self.get_nonce(), auth_url, account_url)
        return resp.json()

    def respond_to_challenge(
        self,
        challenge_url: str,
        account_key: JWK,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST challenge URL with empty payload {} to tell the CA to verify.
        Returns (challenge_body, new_nonce).
        """
        resp = self._post_signed({}, account_key, nonce, challenge_url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def poll_authorization(
        self,
        auth_url: str,
        account_key: JWK,
        account_url: str,
        max_attempts: int = 10,
        poll_interval: float = 2.0,
    ) -> str:
        """
        Poll an authorization URL until status is 'valid' or 'invalid'.
        Returns the final status string ('valid').
        Raises AcmeError on timeout or 'invalid'.
        """
        for _ in range(max_attempts):
            authz = self.get_authorization(auth_url, account_key, account_url)
            status = authz.get("status", "pending")
            if status == "valid":
                return status
            if status == "invalid":
                raise AcmeError(
                    200,
                    {
                        "type": "urn:ietf:params:acme:error:unauthorized",
                        "detail": f"Authorization invalid: {authz}",
                    },
                )
            time.sleep(poll_interval)

        raise AcmeError(
            0,
            {
                "type": "timeout",
                "detail": f"Authorization did not become valid after {max_attempts} polls",
            },
        )

    # ── Finalization & certificate download ───────────────────────────────

    def finalize_order(
        self,
        finalize_url: str,
        csr_der: bytes,
        account_key: JWK,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST /finalize — submit DER-encoded CSR.
        Returns (finalize_response_body, new_nonce).
        """
        csr_b64 = base64.urlsafe_b64encode(csr_der).rstrip(b"=").decode()
        resp = self._post_signed({"csr": csr_b64}, account_key, nonce, finalize_url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def poll_order_for_certificate(
        self,
        order_url: str,
        account_key: JWK,
        account_url: str,
        max_attempts: int = 20,
        poll_interval: float = 3.0,
    ) -> str:
        """
        Poll order until status is 'valid' (certificate ready).
        Returns the certificate URL.
        """
        for _ in range(max_attempts):
            order = self.get_order(order_url, account_key, account_url)
            status = order.get("status")
            if status == "valid":
                cert_url = order.get("certificate")
                if not cert_url:
                    raise AcmeError(0, {"detail": "Order valid but no certificate URL"})
                return cert_url
            if status == "invalid":
                raise AcmeError(
                    0,
                    {"type": "invalid", "detail": f"Order became invalid: {order}"},
                )
            time.sleep(poll_interval)

        raise AcmeError(
            0,
            {"type": "timeout", "detail": "Order did not become valid (certificate not issued)"},
        )

    def download_certificate(
        self,
        cert_url: str,
        account_key: JWK,
        account_url: str,
        nonce: str,
    ) -> tuple[str, str]:
        """
        POST-as-GET the certificate URL and return (full_chain_pem, new_nonce).
        The PEM chain is: leaf cert + intermediates.
        """
        resp = self._post_signed(
            None, account_key, nonce, cert_url, account_url,
            accept="application/pem-certificate-chain",
        )
        return resp.text, resp.headers.get("Replay-Nonce", "")

    # ── Internal ──────────────────────────────────────────────────────────

    def _post_signed(
        self,
        payload: dict | None,
        account_key: JWK,
        nonce: str,
        url: str,
        account_url: str | None = None,
        accept: str = "application/json",
    ) -> requests.Response:
        """
        Sign *payload* with *account_key* and POST to *url*, retrying up to
        `_NONCE_RETRIES` times on `badNonce` responses.

        ACME servers return a fresh `Replay-Nonce` even in error responses, so
        we extract it and re-sign rather than fetching a new nonce (saves one
        round-trip per retry).
        """
        current_nonce = nonce
        for attempt in range(_NONCE_RETRIES):
            body = jwslib.sign_request(payload, account_key, current_nonce, url, account_url)
            resp = self._session.post(
                url,
                json=body,
                headers={
                    "Content-Type": "application/jose+json",
                    "Accept": accept,
                },
                timeout=self.timeout,
            )
            if resp.ok:
                return resp

            try:
                error_body = resp.json()
            except ValueError:
                error_body = {"detail": resp.text}

            if "badNonce" in error_body.get("type", "") and attempt < _NONCE_RETRIES - 1:
                fresh = resp.headers.get("Replay-Nonce")
                current_nonce = fresh or self.get_nonce()
                continue

            raise AcmeError(resp.status_code, error_body, resp.headers.get("Replay-Nonce", ""))

        raise AcmeError(0, {"detail": "Exceeded nonce retry limit"})


def _json_or_empty(resp: requests.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def make_client(settings=None) -> AcmeClient:
    """
    Create an AcmeClient from the current application settings.
    Late-imports config to avoid circular imports at module load time.
    """
    if settings is None:
        from config import settings  # noqa: PLC0415

    return AcmeClient(
        directory_url=settings.ACME_SERVER_URL,
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
    )
