"""
Certificator — CLI entry point.

Usage:
  python main.py --once                 # Run one renewal cycle immediately
  python main.py --schedule             # Run on the configured schedule (default 06:00 UTC)
  python main.py --once --domains "example.com,www.example.com" api.example.com
                                        # Override the domains file for this run
"""
from __future__ import annotations

import argparse
import logging
import sys

import structlog

log = logging.getLogger(__name__)


# ── Logging setup ─────────────────────────────────────────────────────────────


def _renderer(log_format: str):
    if log_format == "LOGFMT":
        return structlog.processors.LogfmtRenderer(key_order=["timestamp", "level", "logger", "event"])
    if log_format == "CONSOLE":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging(log_format: str = "JSON", log_level: str = "INFO") -> None:
    """
    Route both structlog and stdlib `logging` records through one handler.

    Library modules log with `logging.getLogger(__name__)`; the records are
    rendered by structlog's ProcessorFormatter as JSON, logfmt or console text.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    final_processors = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if log_format != "CONSOLE":
        final_processors.append(structlog.processors.format_exc_info)
    final_processors.append(_renderer(log_format))

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=final_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)


# ── Runner ────────────────────────────────────────────────────────────────────


def run_once(domains: list[str] | None = None, settings=None):
    """
    Execute one renewal cycle and return its RunReport.

    Raises CertificatorError when the run cannot start: missing configuration,
    an unreadable domains file, or an account that cannot be reconciled.
    """
    from acme_client.service import make_service
    from config import load_domains
    from lifecycle.account import ensure_account
    from lifecycle.driver import reconcile
    from lifecycle.errors import ConfigurationError
    from storage.vault import make_vault_client

    if settings is None:
        from config import settings

    missing = settings.missing_required()
    if missing:
        raise ConfigurationError(f"{', '.join(missing)} must be set")

    groups = domains or load_domains(settings.CERTIFICATOR_DOMAINS_FILE)
    if not groups:
        raise ConfigurationError(
            f"No domains configured. Add them to {settings.CERTIFICATOR_DOMAINS_FILE} or pass --domains."
        )

    log.info("Starting certificate renewal for %d domain group(s)", len(groups))

    store = make_vault_client(settings)
    service = make_service(settings)

    session = ensure_account(
        store,
        service,
        settings.ACME_ACCOUNT_EMAIL,
        settings.ACME_REREGISTER_ACCOUNT,
        key_type=settings.ACME_ACCOUNT_KEY_TYPE,
    )

    return reconcile(
        groups,
        store,
        session,
        threshold_days=settings.CERTIFICATOR_RENEW_BEFORE_DAYS,
        challenge_provider=settings.ACME_DNS_CHALLENGE_PROVIDER,
        dns_resolver=settings.DNS_ADDRESS,
        propagation_required=settings.ACME_DNS_PROPAGATION_REQUIREMENT,
    )


def run_scheduled(domains: list[str] | None = None) -> None:
    """Run the renewal cycle on a recurring daily schedule."""
    import schedule
    import time
    from config import settings

    schedule_time = settings.SCHEDULE_TIME
    log.info("Scheduling daily certificate check at %s UTC", schedule_time)

    def job() -> None:
        log.info("Scheduled run triggered")
        try:
            report = run_once(domains=domains)
        except Exception as exc:
            log.exception("Scheduled run failed: %s", exc)
            return
        if not report.ok:
            log.error("Scheduled run finished with failures: %s", ", ".join(report.failed))

    schedule.every().day.at(schedule_time).do(job)

    log.info("Running initial check immediately...")
    job()

    log.info("Entering schedule loop — press Ctrl+C to stop")
    while True:
        schedule.run_pending()
        time.sleep(60)


# ── CLI ───────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Certificator — ACME certificate renewal into Vault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --once
  python main.py --schedule
  python main.py --once --domains "example.com,www.example.com" api.example.com
        """,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one renewal cycle immediately and exit",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Run on the configured daily schedule (SCHEDULE_TIME)",
    )
    parser.add_argument(
        "--domains",
        nargs="+",
        metavar="GROUP",
        help="Override the domains file; each GROUP is a comma-joined list, canonical domain first",
    )

    args = parser.parse_args(argv)

    if not args.once and not args.schedule:
        parser.print_help()
        sys.exit(1)

    import requests
    from config import settings
    from lifecycle.errors import CertificatorError

    configure_logging(settings.LOG_FORMAT, settings.LOG_LEVEL)

    missing = settings.missing_required()
    if missing:
        log.error("%s must be set", ", ".join(missing))
        sys.exit(1)

    if args.schedule:
        run_scheduled(domains=args.domains)
        return

    try:
        report = run_once(domains=args.domains)
    except (CertificatorError, requests.RequestException) as exc:
        log.error("Renewal run aborted: %s", exc)
        sys.exit(1)

    if not report.ok:
        log.error("Failed to renew certificates for: %s", ", ".join(report.failed))
    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
