import asyncio

import pytest

from conftest import CSV_REPORT, PAYOR, FakeExecutor, FakeOracle, wait_for_state
from paidquery.errors import CapacityError, InternalError, NotFound, ValidationError
from paidquery.services import RequestService, StatusService
from paidquery.supervisor import WatcherSupervisor
from paidquery.watcher import JobWatcher


@pytest.fixture
async def build(store, terms):
    supervisors = []

    def _build(oracle=None, executor=None, max_active=100, secret_factory=None, timeout=5.0):
        watcher = JobWatcher(
            store,
            oracle or FakeOracle(default=False),
            executor or FakeExecutor(),
            terms,
            poll_interval=0.01,
            timeout=timeout,
        )
        supervisor = WatcherSupervisor(watcher, max_active=max_active)
        supervisors.append(supervisor)
        kwargs = {"secret_factory": secret_factory} if secret_factory else {}
        return RequestService(store, supervisor, terms, **kwargs), StatusService(store), supervisor

    yield _build
    for sup in supervisors:
        await sup.stop()


@pytest.fixture
async def services(build):
    requests, status, _ = build()
    return requests, status


@pytest.mark.asyncio
async def test_create_returns_fresh_secret_and_pending(services, store):
    requests, status = services
    secrets = set()
    for _ in range(20):
        secret = await requests.create_job("node.example.com", "2024-06-01", PAYOR)
        assert secret not in secrets
        secrets.add(secret)
        view = await status.get_status(secret)
        assert view.status == "pending"
        assert view.result is None and view.error is None
    assert await store.count() == 20


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "domain,date,payor,field",
    [
        ("node.example.com", "2024-13-40", PAYOR, "date"),
        ("node.example.com", "2024/01/01", PAYOR, "date"),
        ("node.example.com", "2023-02-29", PAYOR, "date"),
        ("node.example.com", "20240601", PAYOR, "date"),
        ("node.example.com", "2024-6-1", PAYOR, "date"),
        ("node.example.com", " 2024-06-01", PAYOR, "date"),
        ("node.example.com", "2024-06-01\n", PAYOR, "date"),
        ("", "2024-06-01", PAYOR, "domain"),
        ("   ", "2024-06-01", PAYOR, "domain"),
        ("node.example.com", "2024-06-01", "", "payorAddress"),
        (None, "2024-06-01", PAYOR, "domain"),
    ],
)
async def test_invalid_input_creates_nothing(services, store, domain, date, payor, field):
    requests, _ = services
    with pytest.raises(ValidationError) as info:
        await requests.create_job(domain, date, payor)
    assert field in info.value.fields
    assert await store.count() == 0


@pytest.mark.asyncio
async def test_unknown_secret_is_not_found(services):
    _, status = services
    with pytest.raises(NotFound):
        await status.get_status("nope")


@pytest.mark.asyncio
async def test_create_does_not_wait_for_watcher(build, store):
    slow = FakeOracle(default=False)
    requests, status, supervisor = build(oracle=slow)
    secret = await asyncio.wait_for(requests.create_job("node.example.com", "2024-06-01", PAYOR), 0.5)
    assert supervisor.active_count == 1
    assert (await status.get_status(secret)).status == "pending"


@pytest.mark.asyncio
async def test_completed_view_is_stable(build, store):
    requests, status, _ = build(oracle=FakeOracle(outcomes=[True]), executor=FakeExecutor())
    secret = await requests.create_job("node.example.com", "2024-06-01", PAYOR)
    await wait_for_state(store, secret, {"completed"})
    first = await status.get_status(secret)
    second = await status.get_status(secret)
    assert first.result == second.result == CSV_REPORT
    assert first.filename == "psq-node.example.com-2024-06-01.csv"
    assert first.error is None


@pytest.mark.asyncio
async def test_failed_view_has_reason_only(build, store):
    requests, status, _ = build(timeout=0.05)
    secret = await requests.create_job("node.example.com", "2024-06-01", PAYOR)
    await wait_for_state(store, secret, {"failed"})
    view = await status.get_status(secret)
    assert view.error == "Payment not found within required timeframe"
    assert view.result is None


@pytest.mark.asyncio
async def test_capacity_limit(build, store):
    requests, _, _ = build(max_active=2)
    await requests.create_job("a.example.com", "2024-06-01", PAYOR)
    await requests.create_job("b.example.com", "2024-06-01", PAYOR)
    with pytest.raises(CapacityError):
        await requests.create_job("c.example.com", "2024-06-01", PAYOR)
    assert await store.count() == 2


@pytest.mark.asyncio
async def test_secret_collision_regenerates(build, store):
    issued = iter(["dup0dup0dup0dup0", "dup0dup0dup0dup0", "fresh000fresh000"])
    requests, _, _ = build(secret_factory=lambda: next(issued))
    assert await requests.create_job("a.example.com", "2024-06-01", PAYOR) == "dup0dup0dup0dup0"
    assert await requests.create_job("b.example.com", "2024-06-01", PAYOR) == "fresh000fresh000"


@pytest.mark.asyncio
async def test_secret_collisions_give_up(build):
    requests, _, _ = build(secret_factory=lambda: "same0same0same0s")
    await requests.create_job("a.example.com", "2024-06-01", PAYOR)
    with pytest.raises(InternalError):
        await requests.create_job("b.example.com", "2024-06-01", PAYOR)


@pytest.mark.asyncio
async def test_concurrent_reads_never_see_torn_records(build, store):
    executor = FakeExecutor(delay=0.02)
    requests, status, _ = build(oracle=FakeOracle(outcomes=[False, False, True]), executor=executor)
    secret = await requests.create_job("node.example.com", "2024-06-01", PAYOR)
    seen = []

    async def reader():
        while True:
            view = await status.get_status(secret)
            seen.append(view.status)
            assert (view.status == "completed") == (view.result is not None)
            assert (view.status == "failed") == (view.error is not None)
            if view.status in ("completed", "failed"):
                return
            await asyncio.sleep(0)

    await asyncio.wait_for(asyncio.gather(*(reader() for _ in range(5))), 3.0)
    assert "verified" in seen
    assert seen.index("verified") > seen.index("pending")


def test_payment_instructions(terms, store):
    service = RequestService(store, supervisor=None, terms=terms)
    msg = service.payment_instructions("abc123")
    assert "20000000upokt" in msg
    assert terms.payee in msg
    assert "abc123" in msg
