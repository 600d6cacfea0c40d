"""Run a single token refresh sweep outside the web process.

Useful from cron when the API runs with ``TOKEN_REFRESH_ENABLED=false``::

    python -m scripts.refresh_tokens --policy periodic
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from oauth_proxy.core.config import get_settings
from oauth_proxy.core.logging import configure_logging
from oauth_proxy.dependencies import get_refresh_scheduler
from oauth_proxy.services.refresh_scheduler import RefreshScheduler, RefreshStatus, SweepReport

EXIT_OK = 0
EXIT_FAILURES = 1


def _report_payload(report: SweepReport) -> dict:
    return {
        "policy": report.policy,
        "started_at": report.started_at.isoformat(),
        "finished_at": report.finished_at.isoformat() if report.finished_at else None,
        "counts": report.counts,
        "failures": [
            {
                "subject_id": outcome.subject_id,
                "provider_error_code": outcome.provider_error_code,
                "revoked": outcome.revoked,
            }
            for outcome in report.outcomes
            if outcome.status is RefreshStatus.FAILED
        ],
    }


async def run_sweep(scheduler: RefreshScheduler, policy: str) -> SweepReport:
    if policy == "startup":
        return await scheduler.run_startup_sweep()
    return await scheduler.run_periodic_sweep()


def main(argv: list[str] | None = None, scheduler: RefreshScheduler | None = None) -> int:
    parser = argparse.ArgumentParser(description="Refresh provider tokens nearing expiry.")
    parser.add_argument(
        "--policy",
        choices=("startup", "periodic"),
        default="periodic",
        help="startup: everything expiring within the startup horizon; "
        "periodic: recently used credentials only.",
    )
    args = parser.parse_args(argv)

    if scheduler is None:
        configure_logging(get_settings().log_level)
        scheduler = get_refresh_scheduler()

    report = asyncio.run(run_sweep(scheduler, args.policy))
    print(json.dumps(_report_payload(report), indent=2))
    return EXIT_FAILURES if report.counts[RefreshStatus.FAILED.value] else EXIT_OK


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
