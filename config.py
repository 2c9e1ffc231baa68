"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.

The list of domain groups is not an environment variable: it is read from
the YAML file named by CERTIFICATOR_DOMAINS_FILE:

  domains:
    - mydomain.com,www.mydomain.com
    - example.com
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lifecycle.errors import ConfigurationError

_LOG_FORMATS = {"JSON", "LOGFMT", "CONSOLE"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARN", "WARNING", "ERROR", "FATAL", "CRITICAL"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── ACME ───────────────────────────────────────────────────────────────
    ACME_ACCOUNT_EMAIL: str = ""
    ACME_DNS_CHALLENGE_PROVIDER: str = ""
    ACME_DNS_PROPAGATION_REQUIREMENT: bool = True
    ACME_REREGISTER_ACCOUNT: bool = False
    ACME_SERVER_URL: str = "https://acme-staging-v02.api.letsencrypt.org/directory"
    ACME_ACCOUNT_KEY_TYPE: Literal["ec", "rsa"] = "ec"
    # EAB — required by ZeroSSL, Sectigo and similar CAs
    ACME_EAB_KEY_ID: str = ""
    ACME_EAB_HMAC_KEY: str = ""
    # TLS towards the ACME server (for Pebble / self-signed CAs)
    ACME_CA_BUNDLE: str = ""
    ACME_INSECURE: bool = False    # Skip TLS verification (never use in production)

    # ── Vault ──────────────────────────────────────────────────────────────
    VAULT_ADDR: str = "https://127.0.0.1:8200"
    VAULT_APPROLE_ROLE_ID: str = ""
    VAULT_APPROLE_SECRET_ID: str = ""
    VAULT_KV_STORAGE_PATH: str = "secret/data/certificator/"
    VAULT_DEV_ROOT_TOKEN_ID: str = ""
    VAULT_CACERT: str = ""

    # ── Logging ────────────────────────────────────────────────────────────
    LOG_FORMAT: str = "JSON"
    LOG_LEVEL: str = "INFO"

    # ── Renewal run ────────────────────────────────────────────────────────
    DNS_ADDRESS: str = "127.0.0.1:53"
    ENVIRONMENT: str = "prod"
    CERTIFICATOR_DOMAINS_FILE: str = "/code/domains.yml"
    CERTIFICATOR_RENEW_BEFORE_DAYS: int = Field(default=30, ge=0)
    SCHEDULE_TIME: str = "06:00"

    # ── DNS-01 propagation ─────────────────────────────────────────────────
    DNS_PROPAGATION_TIMEOUT_SECONDS: float = 120.0
    DNS_PROPAGATION_INTERVAL_SECONDS: float = 2.0

    # ── Challenge provider credentials ─────────────────────────────────────
    CLOUDFLARE_API_TOKEN: str = ""
    CLOUDFLARE_ZONE_ID: str = ""
    AWS_ROUTE53_HOSTED_ZONE_ID: str = ""
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    GOOGLE_PROJECT_ID: str = ""
    GOOGLE_CLOUD_DNS_ZONE_NAME: str = ""
    GOOGLE_APPLICATION_CREDENTIALS: str = ""
    EXEC_PATH: str = ""

    @field_validator("LOG_FORMAT", "LOG_LEVEL", mode="before")
    @classmethod
    def upper(cls, v: object) -> object:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in _LOG_FORMATS:
            raise ValueError(f"LOG_FORMAT must be one of {sorted(_LOG_FORMATS)}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")
        return v

    def missing_required(self) -> List[str]:
        """Names of settings a renewal run cannot do without."""
        required = {
            "ACME_ACCOUNT_EMAIL": self.ACME_ACCOUNT_EMAIL,
            "ACME_DNS_CHALLENGE_PROVIDER": self.ACME_DNS_CHALLENGE_PROVIDER,
        }
        return [name for name, value in required.items() if not value]


def load_domains(path: str) -> List[str]:
    """
    Read the domain groups from a YAML file with a top-level `domains` list.

    Raises ConfigurationError if the file is missing, unreadable or malformed.
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"opening {path}: {exc}") from exc

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"parsing {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"parsing {path}: expected a mapping with a 'domains' key")
    domains = data.get("domains") or []
    if not isinstance(domains, list) or not all(isinstance(d, str) for d in domains):
        raise ConfigurationError(f"parsing {path}: 'domains' must be a list of strings")
    return domains


# Module-level singleton — import and use everywhere.
settings = Settings()
