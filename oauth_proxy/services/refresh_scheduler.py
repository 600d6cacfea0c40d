"""
Background refresh of provider credentials nearing expiry.

Two sweep policies share one bounded worker pool:

* startup: every credential expiring within the startup horizon (or with no
  recorded expiry);
* periodic: credentials used within the active window that expire within the
  shorter periodic horizon.

At most ``concurrency`` refreshes are in flight at once. A failure on one
candidate is recorded on its credential and never stops the sweep.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from oauth_proxy.clients.google_auth import GoogleOAuthClient, OAuthTokenExchangeError
from oauth_proxy.core.config import RefreshSettings
from oauth_proxy.core.errors import DecryptionError
from oauth_proxy.models.oauth import CredentialRecord, RefreshErrorInfo
from oauth_proxy.services.credential_store import Clock, CredentialStore, utc_now
from oauth_proxy.utils.token_expiry import determine_expiry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RefreshStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED_REVOKED = "skipped:revoked"
    SKIPPED_MISSING = "skipped:missing"


@dataclass(frozen=True, slots=True)
class RefreshOutcome:
    subject_id: str
    status: RefreshStatus
    provider_error_code: Optional[str] = None
    revoked: bool = False


@dataclass(slots=True)
class SweepReport:
    policy: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[RefreshOutcome] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        tally = Counter(outcome.status.value for outcome in self.outcomes)
        return {status.value: tally.get(status.value, 0) for status in RefreshStatus}


class RefreshScheduler:
    """Owns the periodic sweep task; ``start``/``stop`` control its lifetime."""

    def __init__(
        self,
        credential_store: CredentialStore,
        oauth_client: GoogleOAuthClient,
        settings: RefreshSettings,
        *,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._credentials = credential_store
        self._oauth = oauth_client
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Schedule the startup sweep followed by periodic sweeps."""
        if self.running:
            logger.warning("Background refresh already running")
            return self._task  # type: ignore[return-value]
        logger.info(
            "Starting background token refresh (every %ss, concurrency %s)",
            self._settings.interval_seconds,
            self._settings.concurrency,
        )
        self._task = asyncio.create_task(self._run_forever(), name="token-refresh")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Background token refresh stopped")

    async def _run_forever(self) -> None:
        await self._sleep(self._settings.startup_delay_seconds)
        await self._sweep_logged(self.run_startup_sweep)
        while True:
            # The next sweep is only scheduled once the previous one finished.
            await self._sleep(self._settings.interval_seconds)
            await self._sweep_logged(self.run_periodic_sweep)

    async def _sweep_logged(self, sweep: Callable[[], Awaitable[SweepReport]]) -> None:
        try:
            await sweep()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Token refresh sweep failed")

    async def run_startup_sweep(self) -> SweepReport:
        now = self._clock()
        candidates = self._credentials.list_refresh_candidates(
            expiring_before=now + timedelta(seconds=self._settings.startup_horizon_seconds),
        )
        return await self._run_pool("startup", candidates)

    async def run_periodic_sweep(self) -> SweepReport:
        now = self._clock()
        candidates = self._credentials.list_refresh_candidates(
            expiring_before=now + timedelta(seconds=self._settings.periodic_horizon_seconds),
            used_since=now - timedelta(seconds=self._settings.active_window_seconds),
        )
        return await self._run_pool("periodic", candidates)

    async def _run_pool(
        self, policy: str, candidates: List[CredentialRecord]
    ) -> SweepReport:
        report = SweepReport(policy=policy, started_at=self._clock())
        if not candidates:
            logger.info("No credentials due for %s refresh", policy)
            report.finished_at = self._clock()
            return report

        logger.info("Refreshing %d credentials (%s sweep)", len(candidates), policy)
        queue: asyncio.Queue[CredentialRecord] = asyncio.Queue()
        for record in candidates:
            queue.put_nowait(record)

        async def worker() -> None:
            while True:
                try:
                    record = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                report.outcomes.append(await self._refresh_guarded(record))

        workers = min(self._settings.concurrency, len(candidates))
        await asyncio.gather(*(worker() for _ in range(workers)))

        report.finished_at = self._clock()
        logger.info("Token refresh %s sweep complete: %s", policy, report.counts)
        return report

    async def _refresh_guarded(self, record: CredentialRecord) -> RefreshOutcome:
        try:
            return await self.refresh_one(record)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unexpected refresh failure for subject %s", record.subject_id)
            self._credentials.record_refresh_failure(
                record.subject_id,
                error=RefreshErrorInfo(message=str(exc), at=self._clock()),
                revoked=False,
            )
            return RefreshOutcome(record.subject_id, RefreshStatus.FAILED)

    async def refresh_one(self, record: CredentialRecord) -> RefreshOutcome:
        subject_id = record.subject_id
        if record.refresh_token_revoked:
            return RefreshOutcome(subject_id, RefreshStatus.SKIPPED_REVOKED)

        try:
            refresh_token = self._credentials.decrypt_refresh_token(record)
        except DecryptionError:
            logger.error("Stored refresh token for subject %s failed to decrypt", subject_id)
            return RefreshOutcome(subject_id, RefreshStatus.SKIPPED_MISSING)
        if not refresh_token:
            return RefreshOutcome(subject_id, RefreshStatus.SKIPPED_MISSING)

        max_jitter = self._settings.max_jitter_seconds
        if max_jitter > 0:
            await self._sleep(random.uniform(0, max_jitter))

        try:
            grant = await self._oauth.refresh_token(refresh_token)
        except OAuthTokenExchangeError as exc:
            revoked = exc.is_invalid_grant
            self._credentials.record_refresh_failure(
                subject_id,
                error=RefreshErrorInfo(
                    status=exc.status_code,
                    provider_error_code=exc.error_code,
                    message=str(exc),
                    at=self._clock(),
                ),
                revoked=revoked,
            )
            if revoked:
                logger.warning(
                    "Refresh token for subject %s is invalid; reauthentication required",
                    subject_id,
                )
            else:
                logger.warning("Transient refresh failure for subject %s: %s", subject_id, exc)
            return RefreshOutcome(
                subject_id,
                RefreshStatus.FAILED,
                provider_error_code=exc.error_code,
                revoked=revoked,
            )
        except httpx.TransportError as exc:
            self._credentials.record_refresh_failure(
                subject_id,
                error=RefreshErrorInfo(message=str(exc) or type(exc).__name__, at=self._clock()),
                revoked=False,
            )
            logger.warning("Transport error refreshing subject %s: %r", subject_id, exc)
            return RefreshOutcome(subject_id, RefreshStatus.FAILED)

        expiry = determine_expiry(
            expiry_date_ms=grant.expiry_date_ms,
            expires_in=grant.expires_in,
            now=self._clock(),
        )
        self._credentials.update_tokens(
            subject_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or refresh_token,
            token_expiry=expiry,
        )
        logger.info("Refreshed token for subject %s (expires %s)", subject_id, expiry.isoformat())
        return RefreshOutcome(subject_id, RefreshStatus.SUCCESS)


__all__ = ["RefreshOutcome", "RefreshScheduler", "RefreshStatus", "SweepReport"]
