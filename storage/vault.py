"""
HashiCorp Vault KV v2 secret store adapter.

Talks to Vault's HTTP API directly:
  POST /v1/auth/approle/login       — exchange role_id/secret_id for a token
  GET  /v1/<prefix><path>           — read;  {"data": {"data": {...}, "metadata": {...}}}
  POST /v1/<prefix><path>           — write; {"data": {...}} (full replace, new version)

The lifecycle core passes logical paths ("account", "key",
"certificates/<domain>"); this adapter prepends the environment-specific
KV prefix (e.g. "secret/data/certificator/").

Read outcomes:
  404                      → None (never provisioned)
  2xx, data.data is a map  → that map
  2xx, unexpected shape    → {} (found but empty; callers decode it as corrupt)
  anything else            → SecretStoreError
"""
from __future__ import annotations

import logging
from typing import Optional

import requests

from lifecycle.errors import SecretStoreError

logger = logging.getLogger(__name__)


class VaultClient:
    """Path-addressed read/write access to a Vault KV v2 mount."""

    def __init__(
        self,
        address: str,
        kv_prefix: str,
        token: str = "",
        timeout: int = 30,
        ca_bundle: str = "",
    ) -> None:
        self.address = address.rstrip("/")
        self.kv_prefix = kv_prefix
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "certificator/1.0"})
        if ca_bundle:
            self._session.verify = ca_bundle
        if token:
            self.token = token

    # ── Authentication ────────────────────────────────────────────────────

    @property
    def token(self) -> str:
        return self._session.headers.get("X-Vault-Token", "")

    @token.setter
    def token(self, value: str) -> None:
        self._session.headers["X-Vault-Token"] = value

    def login_approle(self, role_id: str, secret_id: str) -> str:
        """Authenticate with the AppRole method and keep the client token."""
        resp = self._request(
            "POST",
            f"{self.address}/v1/auth/approle/login",
            json={"role_id": role_id, "secret_id": secret_id},
        )
        if not resp.ok:
            raise SecretStoreError(
                f"Vault AppRole login failed: HTTP {resp.status_code}", resp.status_code
            )
        try:
            token = resp.json()["auth"]["client_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise SecretStoreError(f"Vault AppRole login returned no client token: {exc}") from exc
        self.token = token
        return token

    # ── KV v2 ─────────────────────────────────────────────────────────────

    def full_path(self, path: str) -> str:
        return self.kv_prefix + path

    def read(self, path: str) -> Optional[dict]:
        """Return the stored field map, None if the path does not exist."""
        full_path = self.full_path(path)
        logger.info("Reading Vault path %s", full_path)
        resp = self._request("GET", self._url(full_path))

        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise SecretStoreError(
                f"failed reading KV from Vault at path {full_path}: HTTP {resp.status_code}",
                resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError:
            return {}
        data = (body.get("data") or {}) if isinstance(body, dict) else {}
        value = data.get("data") if isinstance(data, dict) else None
        if isinstance(value, dict):
            return value
        return {}

    def write(self, path: str, fields: dict[str, str]) -> None:
        """Replace the record at *path* with *fields*."""
        full_path = self.full_path(path)
        logger.info("Writing to Vault path %s", full_path)
        resp = self._request("POST", self._url(full_path), json={"data": fields})
        if not resp.ok:
            raise SecretStoreError(
                f"failed storing KV value to Vault at path {full_path}: HTTP {resp.status_code}",
                resp.status_code,
            )

    # ── Internal ──────────────────────────────────────────────────────────

    def _url(self, full_path: str) -> str:
        return f"{self.address}/v1/{full_path.lstrip('/')}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise SecretStoreError(f"Vault request {method} {url} failed: {exc}") from exc


def make_vault_client(settings=None) -> VaultClient:
    """
    Create an authenticated VaultClient from application settings.

    In the "dev" environment the root token from VAULT_DEV_ROOT_TOKEN_ID is
    used as-is; everywhere else the client logs in with AppRole.
    """
    if settings is None:
        from config import settings  # noqa: PLC0415

    client = VaultClient(
        address=settings.VAULT_ADDR,
        kv_prefix=settings.VAULT_KV_STORAGE_PATH,
        ca_bundle=settings.VAULT_CACERT,
    )
    if settings.ENVIRONMENT == "dev":
        client.token = settings.VAULT_DEV_ROOT_TOKEN_ID
    else:
        client.login_approle(settings.VAULT_APPROLE_ROLE_ID, settings.VAULT_APPROLE_SECRET_ID)
    logger.debug("Vault client ready for %s (prefix %s)", client.address, client.kv_prefix)
    return client
