"""
Reconciliation driver — walks the configured domain groups one at a time.

For each group:
  read stored bundle → decide → (reissue via ACME → persist bundle)

A failure in any step is logged and recorded against the group's canonical
domain; the remaining groups are still processed.  A bundle whose leaf is a
CA certificate is reported as a diagnostic and reissued.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from lifecycle.account import AcmeSession
from lifecycle.contracts import SecretStore
from lifecycle.errors import InvalidBundleShape
from lifecycle.models import DomainGroup
from lifecycle.renewal import RenewalDecision, decide
from storage.records import decode_certificate

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    renewed: List[str] = field(default_factory=list)
    up_to_date: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


def reconcile(
    groups: Iterable[str | DomainGroup],
    store: SecretStore,
    session: AcmeSession,
    threshold_days: int,
    challenge_provider: str,
    dns_resolver: str,
    propagation_required: bool = True,
    now: Optional[datetime] = None,
) -> RunReport:
    """Process every domain group and return what happened to each."""
    report = RunReport()

    for raw in groups:
        try:
            group = raw if isinstance(raw, DomainGroup) else DomainGroup.parse(raw)
        except ValueError as exc:
            logger.error("Skipping invalid domain group %r: %s", raw, exc)
            report.failed.append(str(raw))
            continue

        try:
            renewed = _reconcile_group(
                group,
                store,
                session,
                threshold_days,
                challenge_provider,
                dns_resolver,
                propagation_required,
                now,
                report,
            )
        except Exception as exc:
            logger.error("Certificate for %s failed: %s", group.canonical, exc)
            report.failed.append(group.canonical)
            continue

        if renewed:
            report.renewed.append(group.canonical)
        else:
            report.up_to_date.append(group.canonical)

    if report.failed:
        logger.error("Failed to renew certificates for: %s", report.failed)
    else:
        logger.info(
            "Run complete — renewed: %s | up to date: %s",
            report.renewed or "none",
            report.up_to_date or "none",
        )
    return report


def _reconcile_group(
    group: DomainGroup,
    store: SecretStore,
    session: AcmeSession,
    threshold_days: int,
    challenge_provider: str,
    dns_resolver: str,
    propagation_required: bool,
    now: Optional[datetime],
    report: RunReport,
) -> bool:
    """Returns True when a new certificate was issued and stored."""
    bundle = decode_certificate(group, store.read(group.storage_path)).unwrap()
    logger.info("Checking certificate for %s", group.canonical)

    try:
        decision: RenewalDecision = decide(bundle, list(group.domains), threshold_days, now)
    except InvalidBundleShape as exc:
        logger.error("%s — reissuing", exc)
        report.diagnostics.append(str(exc))
        decision = exc.decision

    if not decision.reissue:
        logger.info("Certificate for %s is up to date, skipping renewal", group.canonical)
        return False

    logger.info("Obtaining certificate for %s (%s)", group.canonical, decision.reason.value)
    issued = session.obtain_certificate(
        list(group.domains),
        challenge_provider,
        propagation_required,
        dns_resolver,
    )
    store.write(group.storage_path, issued.to_record())
    logger.info("Stored new certificate for %s (expires %s)", group.canonical, issued.not_after.date())
    return True
