"""Per-job payment watcher.

A JobWatcher owns one job from creation to a terminal state: it polls the
payment oracle until the payment shows up or the poll window closes, marks
the job verified, runs the report and stores the outcome. Nothing is
returned to the caller; progress is only visible through the store.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from . import metrics
from .errors import ExecutorError, OracleTransientError, PaymentTimeout
from .executor import QueryExecutor
from .models import Job, JobState
from .oracle import PaymentOracle
from .store import JobStore

logger = logging.getLogger(__name__)

PAYMENT_ERROR_REASON = "Processing error: payment verification unavailable"
REPORT_ERROR_REASON = "Processing error: report generation failed"
CANCELLED_REASON = "Cancelled before completion"


@dataclass(frozen=True)
class PaymentTerms:
    payee: str
    min_amount: int
    denom: str = "upokt"


class JobWatcher:
    def __init__(
        self,
        store: JobStore,
        oracle: PaymentOracle,
        executor: QueryExecutor,
        terms: PaymentTerms,
        poll_interval: float = 5.0,
        timeout: float = 150.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.oracle = oracle
        self.executor = executor
        self.terms = terms
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    async def watch(self, job: Job) -> None:
        tag = job.secret[:8]
        try:
            try:
                await self._wait_for_payment(job)
            except PaymentTimeout as exc:
                await self._fail(job, JobState.PENDING, exc.message, "timeout")
                return
            except OracleTransientError as exc:
                await self._fail(job, JobState.PENDING, exc.message, "payment_error")
                return

            verified = job.mark_verified()
            if not await self.store.compare_and_set(JobState.PENDING, verified):
                logger.warning("watcher %s: job changed under us, stopping", tag)
                return
            metrics.payments_verified_total.inc()
            logger.info("watcher %s: payment verified, running report", tag)

            await self._run_report(verified)
        except asyncio.CancelledError:
            await self.mark_cancelled(job.secret)
            raise
        except Exception:
            logger.exception("watcher %s: stopped by unexpected error", tag)
            metrics.error_count.inc()
            await self._fail_after_crash(job.secret)

    async def _wait_for_payment(self, job: Job) -> None:
        """Poll until the payment is found or the window closes.

        Raises PaymentTimeout when no payment showed up, or
        OracleTransientError when the last poll before the deadline errored.
        """
        tag = job.secret[:8]
        start = self._clock()
        last_error: Optional[BaseException] = None
        while True:
            elapsed = self._clock() - start
            # bound each call so a hung oracle cannot push us past timeout + interval
            call_budget = max(self.timeout - elapsed, 0.0) + self.poll_interval
            try:
                async with asyncio.timeout(call_budget):
                    found = await self.oracle.has_qualifying_payment(
                        self.terms.payee,
                        self.terms.min_amount,
                        job.payor_address,
                        job.secret,
                        job.created_at,
                    )
                # a cancel that raced the oracle reply must still stop the watcher
                task = asyncio.current_task()
                if task is not None and task.cancelling():
                    raise asyncio.CancelledError()
            except Exception as exc:
                last_error = exc
                metrics.oracle_errors_total.inc()
                logger.warning("watcher %s: payment poll failed: %s", tag, exc)
            else:
                last_error = None
                if found:
                    metrics.payment_wait_seconds.observe(self._clock() - start)
                    return

            elapsed = self._clock() - start
            if elapsed >= self.timeout:
                break
            await self._sleep(min(self.poll_interval, self.timeout - elapsed))

        if last_error is not None:
            logger.error("watcher %s: giving up, oracle still failing: %s", tag, last_error)
            raise OracleTransientError(PAYMENT_ERROR_REASON) from last_error
        logger.info("watcher %s: no payment after %.0fs", tag, self.timeout)
        raise PaymentTimeout()

    async def _run_report(self, job: Job) -> None:
        tag = job.secret[:8]
        start = time.monotonic()
        try:
            result = await self.executor.run_report(job.domain, job.date)
            if not result:
                raise ExecutorError(f"No report data for {job.domain} on {job.date}")
        except ExecutorError as exc:
            logger.warning("watcher %s: report failed: %s", tag, exc)
            await self._fail(job, JobState.VERIFIED, exc.message, "executor")
            return
        except Exception:
            logger.exception("watcher %s: unexpected error while running report", tag)
            metrics.error_count.inc()
            await self._fail(job, JobState.VERIFIED, REPORT_ERROR_REASON, "executor")
            return
        finally:
            metrics.report_latency_seconds.observe(time.monotonic() - start)

        if await self.store.compare_and_set(JobState.VERIFIED, job.mark_completed(result)):
            metrics.jobs_completed_total.inc()
            logger.info("watcher %s: report ready (%d bytes)", tag, len(result))

    async def _fail(self, job: Job, expected: JobState, reason: str, label: str) -> None:
        if await self.store.compare_and_set(expected, job.mark_failed(reason)):
            metrics.jobs_failed_total.labels(reason=label).inc()
            logger.info("watcher %s: failed: %s", job.secret[:8], reason)

    async def _fail_after_crash(self, secret: str) -> None:
        """Best effort: leave the job terminal with the reason for the stage it reached."""
        try:
            current = await self.store.get(secret)
            if current is None or current.is_terminal:
                return
            if current.state == JobState.VERIFIED:
                reason, label = REPORT_ERROR_REASON, "executor"
            else:
                reason, label = PAYMENT_ERROR_REASON, "payment_error"
            await self._fail(current, current.state, reason, label)
        except Exception:
            logger.exception("watcher %s: could not record failure", secret[:8])

    async def mark_cancelled(self, secret: str) -> None:
        """Fail the job unless it already finished. Safe to call twice."""
        current = await self.store.get(secret)
        if current is None or current.is_terminal:
            return
        await self._fail(current, current.state, CANCELLED_REASON, "cancelled")
