"""
DNS-01 challenge providers and propagation checking.

Provides:
  compute_dns_txt_value(key_authorization) -> str
      Computes the TXT record value: base64url(SHA-256(key_authorization))

  DnsProvider (ABC)
      Interface every challenge provider implements (present / cleanup).

  CloudflareDnsProvider  — uses the `cloudflare` library (>=3.0)
  Route53DnsProvider     — uses `boto3`
  GoogleCloudDnsProvider — uses `google-cloud-dns`
  ExecDnsProvider        — runs an external script: <script> present|cleanup <fqdn> <value>

  make_dns_provider(name) -> DnsProvider
      Resolves a provider by name using credentials from settings.

  wait_for_propagation(fqdn, value, resolver_address)
      Polls every authoritative nameserver of the record's zone until all of
      them serve the TXT value.

DNS-01 protocol (RFC 8555 §8.4):
  1. key_authorization = token + "." + jwk_thumbprint
  2. TXT record value = base64url(SHA-256(key_authorization))
  3. DNS name = _acme-challenge.{domain}
  4. Create record → wait for propagation → POST challenge URL → poll
"""
from __future__ import annotations

import base64
import hashlib
import logging
import os
import subprocess
import time
from abc import ABC, abstractmethod

import dns.exception
import dns.resolver

from lifecycle.errors import ChallengeError

logger = logging.getLogger(__name__)


# ─── TXT value computation ─────────────────────────────────────────────────────


def compute_dns_txt_value(key_authorization: str) -> str:
    """Return base64url(SHA-256(key_authorization)) with no padding."""
    digest = hashlib.sha256(key_authorization.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def challenge_fqdn(domain: str) -> str:
    """Fully-qualified challenge record name (trailing dot) for a domain or wildcard."""
    return f"_acme-challenge.{domain.removeprefix('*.').rstrip('.')}."


# ─── Provider ABC ─────────────────────────────────────────────────────────────


class DnsProvider(ABC):
    """Abstract base for DNS-01 TXT record management."""

    name = ""

    @abstractmethod
    def present(self, domain: str, txt_value: str) -> None:
        """Create (or update) the _acme-challenge TXT record for *domain*.

        Must be idempotent — if the record already exists with the same value,
        do nothing.
        """

    @abstractmethod
    def cleanup(self, domain: str, txt_value: str) -> None:
        """Delete the _acme-challenge TXT record for *domain* with the given value."""


# ─── Cloudflare ───────────────────────────────────────────────────────────────


class CloudflareDnsProvider(DnsProvider):
    """DNS-01 provider backed by the Cloudflare API (cloudflare>=3.0)."""

    name = "cloudflare"

    def __init__(self, api_token: str, zone_id: str = "") -> None:
        try:
            import cloudflare as cf_mod
        except ImportError as exc:
            raise ChallengeError(
                "cloudflare package is required for challenge provider 'cloudflare'. "
                "Install it with: pip install 'certificator[dns-cloudflare]'"
            ) from exc

        self._cf_mod = cf_mod
        self._api_token = api_token
        self._explicit_zone_id = zone_id

    def _get_client(self):
        return self._cf_mod.Cloudflare(api_token=self._api_token)

    def _resolve_zone_id(self, cf, domain: str) -> str:
        """Return zone ID — uses explicit value if set, else auto-discovers."""
        if self._explicit_zone_id:
            return self._explicit_zone_id

        parts = domain.removeprefix("*.").split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:])
            zone_list = list(cf.zones.list(name=candidate))
            if zone_list:
                return zone_list[0].id

        raise ChallengeError(f"Could not discover Cloudflare zone for domain: {domain}")

    def present(self, domain: str, txt_value: str) -> None:
        cf = self._get_client()
        zone_id = self._resolve_zone_id(cf, domain)
        name = challenge_fqdn(domain).rstrip(".")

        existing = list(cf.dns.records.list(zone_id=zone_id, name=name, type="TXT"))
        for record in existing:
            if getattr(record, "content", None) == txt_value:
                logger.debug("TXT record %s already exists — skipping create", name)
                return

        cf.dns.records.create(zone_id=zone_id, type="TXT", name=name, content=txt_value, ttl=60)
        logger.info("Created Cloudflare TXT record %s", name)

    def cleanup(self, domain: str, txt_value: str) -> None:
        cf = self._get_client()
        zone_id = self._resolve_zone_id(cf, domain)
        name = challenge_fqdn(domain).rstrip(".")

        for record in cf.dns.records.list(zone_id=zone_id, name=name, type="TXT"):
            if getattr(record, "content", None) == txt_value:
                cf.dns.records.delete(record.id, zone_id=zone_id)
                logger.info("Deleted Cloudflare TXT record %s", name)
                return
        logger.debug("TXT record %s not found — nothing to delete", name)


# ─── Route 53 ─────────────────────────────────────────────────────────────────


class Route53DnsProvider(DnsProvider):
    """DNS-01 provider backed by AWS Route 53 (boto3)."""

    name = "route53"

    def __init__(
        self,
        hosted_zone_id: str = "",
        region: str = "us-east-1",
        access_key_id: str = "",
        secret_access_key: str = "",
    ) -> None:
        try:
            import boto3
        except ImportError as exc:
            raise ChallengeError(
                "boto3 package is required for challenge provider 'route53'. "
                "Install it with: pip install 'certificator[dns-route53]'"
            ) from exc

        self._boto3 = boto3
        self._explicit_zone_id = hosted_zone_id
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key

    def _get_client(self):
        kwargs: dict = {"region_name": self._region}
        if self._access_key_id:
            kwargs["aws_access_key_id"] = self._access_key_id
        if self._secret_access_key:
            kwargs["aws_secret_access_key"] = self._secret_access_key
        return self._boto3.client("route53", **kwargs)

    def _resolve_zone_id(self, client, domain: str) -> str:
        if self._explicit_zone_id:
            return self._explicit_zone_id

        parts = domain.removeprefix("*.").split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:]) + "."
            response = client.list_hosted_zones_by_name(DNSName=candidate, MaxItems="1")
            zones = response.get("HostedZones", [])
            if zones and zones[0]["Name"] == candidate:
                # "/hostedzone/ZXXXXX" → "ZXXXXX"
                return zones[0]["Id"].split("/")[-1]

        raise ChallengeError(f"Could not discover Route53 hosted zone for domain: {domain}")

    def _change(self, action: str, domain: str, txt_value: str) -> None:
        client = self._get_client()
        zone_id = self._resolve_zone_id(client, domain)
        client.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={
                "Changes": [
                    {
                        "Action": action,
                        "ResourceRecordSet": {
                            "Name": challenge_fqdn(domain),
                            "Type": "TXT",
                            "TTL": 60,
                            # Route53 requires TXT values wrapped in double-quotes
                            "ResourceRecords": [{"Value": f'"{txt_value}"'}],
                        },
                    }
                ]
            },
        )

    def present(self, domain: str, txt_value: str) -> None:
        self._change("UPSERT", domain, txt_value)
        logger.info("Created/updated Route53 TXT record %s", challenge_fqdn(domain))

    def cleanup(self, domain: str, txt_value: str) -> None:
        self._change("DELETE", domain, txt_value)
        logger.info("Deleted Route53 TXT record %s", challenge_fqdn(domain))


# ─── Google Cloud DNS ─────────────────────────────────────────────────────────


class GoogleCloudDnsProvider(DnsProvider):
    """DNS-01 provider backed by Google Cloud DNS (google-cloud-dns>=0.35)."""

    name = "google"

    def __init__(self, project_id: str, zone_name: str) -> None:
        try:
            from google.cloud import dns as gcp_dns
        except ImportError as exc:
            raise ChallengeError(
                "google-cloud-dns package is required for challenge provider 'google'. "
                "Install it with: pip install 'certificator[dns-google]'"
            ) from exc

        self._gcp_dns = gcp_dns
        self._project_id = project_id
        self._zone_name = zone_name

    def _zone(self):
        return self._gcp_dns.Client(project=self._project_id).zone(self._zone_name)

    def present(self, domain: str, txt_value: str) -> None:
        zone = self._zone()
        name = challenge_fqdn(domain)
        expected_rdata = [f'"{txt_value}"']

        existing = next(
            (r for r in zone.list_resource_record_sets() if r.name == name and r.record_type == "TXT"),
            None,
        )
        if existing is not None and existing.rdata == expected_rdata:
            logger.debug("TXT record %s already exists with correct value — skipping create", name)
            return

        changes = zone.changes()
        if existing is not None:
            changes.delete_record_set(existing)
        changes.add_record_set(zone.resource_record_set(name, "TXT", 60, expected_rdata))
        changes.create()
        logger.info("Created Google Cloud DNS TXT record %s", name)

    def cleanup(self, domain: str, txt_value: str) -> None:
        zone = self._zone()
        name = challenge_fqdn(domain)
        changes = zone.changes()
        changes.delete_record_set(zone.resource_record_set(name, "TXT", 60, [f'"{txt_value}"']))
        changes.create()
        logger.info("Deleted Google Cloud DNS TXT record %s", name)


# ─── Exec ─────────────────────────────────────────────────────────────────────


class ExecDnsProvider(DnsProvider):
    """
    Delegates record management to an external program:

      <script> present <fqdn> <value>
      <script> cleanup <fqdn> <value>

    A non-zero exit status is a challenge failure.
    """

    name = "exec"

    def __init__(self, script_path: str, timeout: int = 60) -> None:
        if not script_path:
            raise ChallengeError("EXEC_PATH must be set for challenge provider 'exec'")
        self._script_path = script_path
        self._timeout = timeout

    def _run(self, action: str, domain: str, txt_value: str) -> None:
        fqdn = challenge_fqdn(domain)
        try:
            result = subprocess.run(
                [self._script_path, action, fqdn, txt_value],
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ChallengeError(f"exec provider {action} failed for {fqdn}: {exc}") from exc

        if result.returncode != 0:
            raise ChallengeError(
                f"exec provider {action} for {fqdn} exited with {result.returncode}: "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        logger.info("exec provider %s %s", action, fqdn)

    def present(self, domain: str, txt_value: str) -> None:
        self._run("present", domain, txt_value)

    def cleanup(self, domain: str, txt_value: str) -> None:
        self._run("cleanup", domain, txt_value)


# ─── Factory ──────────────────────────────────────────────────────────────────


PROVIDER_NAMES = ("cloudflare", "route53", "google", "exec")


def make_dns_provider(name: str, settings=None) -> DnsProvider:
    """Instantiate the challenge provider registered under *name*.

    Reads credentials from settings at call time (mirrors make_client()).
    Raises ChallengeError for unknown provider names.
    """
    if settings is None:
        from config import settings  # late import to avoid circular dependency

    if name == "cloudflare":
        return CloudflareDnsProvider(
            api_token=settings.CLOUDFLARE_API_TOKEN,
            zone_id=settings.CLOUDFLARE_ZONE_ID,
        )
    if name == "route53":
        return Route53DnsProvider(
            hosted_zone_id=settings.AWS_ROUTE53_HOSTED_ZONE_ID,
            region=settings.AWS_REGION,
            access_key_id=settings.AWS_ACCESS_KEY_ID,
            secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        )
    if name == "google":
        if settings.GOOGLE_APPLICATION_CREDENTIALS:
            os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", settings.GOOGLE_APPLICATION_CREDENTIALS)
        return GoogleCloudDnsProvider(
            project_id=settings.GOOGLE_PROJECT_ID,
            zone_name=settings.GOOGLE_CLOUD_DNS_ZONE_NAME,
        )
    if name == "exec":
        return ExecDnsProvider(script_path=settings.EXEC_PATH)

    raise ChallengeError(
        f"Unknown challenge provider: {name!r}. Must be one of: {', '.join(PROVIDER_NAMES)}"
    )


# ─── Propagation ──────────────────────────────────────────────────────────────


def parse_resolver_address(address: str) -> tuple[str, int]:
    """Split "host:port" (or "[v6]:port", or a bare host) into (host, port)."""
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else 53
    if address.count(":") == 1:
        host, _, port = address.partition(":")
        return host, int(port)
    return address, 53


def _resolver(nameservers: list[str], port: int = 53, lifetime: float = 10.0) -> dns.resolver.Resolver:
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = nameservers
    resolver.port = port
    resolver.lifetime = lifetime
    return resolver


def authoritative_nameservers(fqdn: str, recursive: dns.resolver.Resolver) -> list[str]:
    """IP addresses of the authoritative nameservers of the zone holding *fqdn*."""
    zone = dns.resolver.zone_for_name(fqdn, resolver=recursive)
    addresses: list[str] = []
    for ns in recursive.resolve(zone, "NS"):
        target = ns.target.to_text()
        for rdtype in ("A", "AAAA"):
            try:
                addresses.extend(r.address for r in recursive.resolve(target, rdtype))
            except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
                continue
    if not addresses:
        raise ChallengeError(f"no authoritative nameserver addresses found for zone {zone}")
    return addresses


def txt_values(fqdn: str, resolver: dns.resolver.Resolver) -> list[str]:
    try:
        answer = resolver.resolve(fqdn, "TXT")
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        return []
    return [b"".join(rdata.strings).decode() for rdata in answer]


def wait_for_propagation(
    fqdn: str,
    value: str,
    resolver_address: str,
    timeout: float = 120.0,
    interval: float = 2.0,
) -> None:
    """
    Block until every authoritative nameserver of *fqdn*'s zone serves *value*.

    The recursive resolver at *resolver_address* is used to discover the zone
    and its nameservers.  Raises ChallengeError when *timeout* expires.
    """
    host, port = parse_resolver_address(resolver_address)
    recursive = _resolver([host], port)
    deadline = time.monotonic() + timeout
    last_problem = "record not visible yet"

    while True:
        try:
            nameservers = authoritative_nameservers(fqdn, recursive)
            missing = [ns for ns in nameservers if value not in txt_values(fqdn, _resolver([ns]))]
            if not missing:
                logger.info("TXT record %s has propagated to %d nameserver(s)", fqdn, len(nameservers))
                return
            last_problem = f"not yet served by {', '.join(missing)}"
        except dns.exception.DNSException as exc:
            last_problem = str(exc)

        if time.monotonic() >= deadline:
            raise ChallengeError(f"TXT record {fqdn} did not propagate within {timeout:.0f}s: {last_problem}")
        logger.debug("Waiting for %s to propagate: %s", fqdn, last_problem)
        time.sleep(interval)
