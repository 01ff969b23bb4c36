import asyncio
from typing import List, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from paidquery.config import Settings
from paidquery.main import create_app
from paidquery.models import Job
from paidquery.store import InMemoryJobStore
from paidquery.watcher import JobWatcher, PaymentTerms

PAYEE = "pokt1lf0kekv9zcv9v3wy4v6jx2wh7v4665s8e0sl9s"
PAYOR = "pokt1abc0000000000000000000000000000000000"
CSV_REPORT = (
    "domain,day,chain_id,relays,err_cnt,success_rate,avg_total_latency,p95_latency,p99_latency\n"
    "node.example.com,2024-06-01,F00C,1200,3,0.9975,0.21,0.48,0.93\n"
)


class FakeOracle:
    """Scripted PaymentOracle.

    `outcomes` is consumed one per poll: True/False are returned, exceptions
    raised. Once exhausted every poll returns `default`.
    """

    def __init__(self, outcomes=None, default=False):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls: List[tuple] = []

    async def has_qualifying_payment(self, payee, min_amount, payor, memo, since):
        self.calls.append((payee, min_amount, payor, memo, since))
        await asyncio.sleep(0)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeExecutor:
    def __init__(self, result: str = CSV_REPORT, error: Optional[Exception] = None, store=None, delay: float = 0):
        self.result = result
        self.error = error
        self.store = store
        self.delay = delay
        self.calls: List[tuple] = []
        self.states_seen: List[str] = []

    async def run_report(self, domain, date):
        self.calls.append((domain, date))
        if self.store is not None:
            for secret in list(self.store._jobs):
                self.states_seen.append(self.store._jobs[secret].state.value)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class VirtualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def settings():
    return Settings(
        poll_interval_seconds=0.05,
        payment_timeout_seconds=1.0,
        reaper_interval_seconds=0.05,
        job_retention_seconds=60,
        max_active_jobs=50,
    )


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def terms():
    return PaymentTerms(payee=PAYEE, min_amount=20_000_000)


@pytest.fixture
def make_watcher(store, terms, clock):
    def _make(oracle, executor=None, poll_interval=5.0, timeout=150.0):
        return JobWatcher(
            store,
            oracle,
            executor or FakeExecutor(store=store),
            terms,
            poll_interval=poll_interval,
            timeout=timeout,
            clock=clock,
            sleep=clock.sleep,
        )

    return _make


@pytest.fixture
async def pending_job(store):
    job = Job(secret="a1b2c3d4e5f6a7b8", domain="node.example.com", date="2024-06-01", payor_address=PAYOR)
    assert await store.create(job)
    return job


@pytest.fixture
def oracle():
    return FakeOracle(outcomes=[False, True])


@pytest.fixture
def executor(store):
    return FakeExecutor(store=store)


@pytest.fixture
async def app(settings, store, oracle, executor):
    application = create_app(settings, store=store, oracle=oracle, executor=executor)
    yield application
    await application.state.supervisor.stop()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


async def wait_for_state(store, secret, states, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        job = await store.get(secret)
        if job is not None and job.state.value in states:
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {secret} never reached {states}")

