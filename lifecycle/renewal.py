"""
Renewal decision engine — is the stored certificate still usable?

Rules, evaluated in order:
  1. no certificate stored             → reissue (first issuance)
  2. leaf position holds a CA cert     → reissue AND raise InvalidBundleShape
  3. DNS names ≠ required domains      → reissue (set equality, duplicates ignored)
  4. remaining whole days ≤ threshold  → reissue, otherwise keep

Remaining days are floor(time until notAfter / 24h), so a certificate with
exactly `threshold` days and a few hours left is reissued.

Names are compared lower-cased and without a trailing dot, since DNS names
are case-insensitive and CAs return SANs in canonical form.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from lifecycle.errors import InvalidBundleShape
from lifecycle.models import CertificateBundle

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


class RenewalReason(str, Enum):
    MISSING = "missing"
    CA_LEAF = "ca_leaf"
    DOMAINS_CHANGED = "domains_changed"
    EXPIRING = "expiring"
    VALID = "valid"


@dataclass(frozen=True)
class RenewalDecision:
    reissue: bool
    reason: RenewalReason
    remaining_days: Optional[int] = None


def normalize_domains(domains: Iterable[str]) -> frozenset[str]:
    """Set of lower-cased names without trailing dots."""
    return frozenset(d.strip().rstrip(".").lower() for d in domains if d.strip())


def remaining_days(not_after: datetime, now: Optional[datetime] = None) -> int:
    """Whole days until *not_after* (negative once expired)."""
    now = now or datetime.now(tz=timezone.utc)
    return math.floor((not_after - now).total_seconds() / _SECONDS_PER_DAY)


def decide(
    bundle: Optional[CertificateBundle],
    required_domains: list[str],
    threshold_days: int,
    now: Optional[datetime] = None,
) -> RenewalDecision:
    """
    Decide whether *bundle* must be reissued for *required_domains*.

    Raises InvalidBundleShape for a bundle whose leaf is a CA certificate;
    the exception's `decision` says to reissue.
    """
    primary = required_domains[0] if required_domains else "?"

    if bundle is None:
        logger.info("No certificate stored for %s — it needs issuing", primary)
        return RenewalDecision(reissue=True, reason=RenewalReason.MISSING)

    if bundle.is_ca:
        raise InvalidBundleShape(
            primary, RenewalDecision(reissue=True, reason=RenewalReason.CA_LEAF)
        )

    cert_names = bundle.dns_names
    if normalize_domains(cert_names) != normalize_domains(required_domains):
        logger.info("Certificate %s domains changed, it needs reissuing", primary)
        logger.info("Certificate domains: %s", cert_names)
        logger.info("Required domains: %s", required_domains)
        return RenewalDecision(reissue=True, reason=RenewalReason.DOMAINS_CHANGED)

    days = remaining_days(bundle.not_after, now)
    logger.info("Certificate for %s is valid for %d more days", primary, days)
    if days > threshold_days:
        logger.info("Certificate for %s does not need renewing", primary)
        return RenewalDecision(reissue=False, reason=RenewalReason.VALID, remaining_days=days)

    return RenewalDecision(reissue=True, reason=RenewalReason.EXPIRING, remaining_days=days)
