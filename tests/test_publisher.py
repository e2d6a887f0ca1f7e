import asyncio
import json
import pytest
from datetime import timedelta

from oidc_bridge.models.keys import KeySet, RotationState
from oidc_bridge.models.snapshot import CacheSnapshot
from oidc_bridge.services.bridge import Bridge, PollOutcome
from oidc_bridge.services.cache.memory import InMemorySharedCache
from oidc_bridge.services.documents import PublicationLayout
from oidc_bridge.services.publisher import ConditionalWriter, PublishOutcome, Publisher, heartbeat_bucket
from oidc_bridge.services.rotation import observe
from oidc_bridge.shared.adapters.memory import InMemoryStorageBackend
from oidc_bridge.shared.core.exceptions import PermissionDeniedError, TransientStorageError

from conftest import ISSUER, T0, FakeClock, FakeUpstream

LAYOUT = PublicationLayout(prefix="mirror")


def fast_writer(backend, **kwargs) -> ConditionalWriter:
    params = {"max_attempts": 3, "attempt_timeout": 1.0, "backoff_min": 0.001, "backoff_max": 0.002}
    params.update(kwargs)
    return ConditionalWriter(backend, **params)


async def seed(cache, *keys, issuer=ISSUER, generation=1):
    state = observe(RotationState(), KeySet(keys), T0, timedelta(hours=24)).state
    _, version = await cache.read("default")
    return await cache.write("default", CacheSnapshot(generation, state, T0, issuer), version)


class FlakyBackend(InMemoryStorageBackend):
    """Fails the first `failures` writes with the given error."""

    def __init__(self, failures: int, error: Exception):
        super().__init__()
        self.failures = failures
        self.error = error
        self.write_attempts = 0

    async def write_if_match(self, path, data, expected_version, content_type="application/json", cache_control=None):
        self.write_attempts += 1
        if self.write_attempts <= self.failures:
            raise self.error
        return await super().write_if_match(path, data, expected_version, content_type, cache_control)


class RacingBackend(InMemoryStorageBackend):
    """Holds every reader until `racers` of them have read the same version."""

    def __init__(self, racers: int):
        super().__init__()
        self.racers = racers
        self.arrived = 0
        self.all_read = asyncio.Event()

    async def read(self, path):
        result = await super().read(path)
        self.arrived += 1
        if self.arrived >= self.racers:
            self.all_read.set()
        await self.all_read.wait()
        return result


async def wait_for_condition(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_publishes_discovery_and_jwks(clock, key_a, key_b):
    cache = InMemorySharedCache()
    backend = InMemoryStorageBackend()
    await seed(cache, key_a, key_b)
    publisher = Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER, clock=clock)

    report = await publisher.publish_once()

    assert report.ok
    assert report.outcomes == {"jwks": PublishOutcome.COMMITTED, "discovery": PublishOutcome.COMMITTED}
    discovery = json.loads((await backend.read("mirror/.well-known/openid-configuration")).data)
    jwks = json.loads((await backend.read("mirror/openid/v1/jwks")).data)
    assert discovery["issuer"] == ISSUER
    assert discovery["jwks_uri"] == ISSUER + "/openid/v1/jwks"
    assert discovery["id_token_signing_alg_values_supported"] == ["RS256"]
    assert [k["kid"] for k in jwks["keys"]] == [key_a.kid, key_b.kid]


@pytest.mark.asyncio
async def test_issuer_is_published_byte_for_byte(clock, key_a):
    issuer = "https://oidc.example.com/cluster-a/"
    cache = InMemorySharedCache()
    backend = InMemoryStorageBackend()
    await seed(cache, key_a, issuer=issuer)
    publisher = Publisher(cache, fast_writer(backend), LAYOUT, issuer=issuer, clock=clock)

    await publisher.publish_once()

    discovery = json.loads((await backend.read(LAYOUT.discovery_path)).data)
    assert discovery["issuer"] == issuer
    assert discovery["jwks_uri"] == "https://oidc.example.com/cluster-a/openid/v1/jwks"


@pytest.mark.asyncio
async def test_snapshot_for_another_issuer_is_not_published(clock, key_a):
    cache = InMemorySharedCache()
    backend = InMemoryStorageBackend()
    await seed(cache, key_a, issuer="https://elsewhere.example.com")
    publisher = Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER, clock=clock)

    report = await publisher.publish_once()

    assert report.skipped_reason == "issuer_mismatch"
    assert backend.write_count == 0


@pytest.mark.asyncio
async def test_empty_cache_publishes_nothing(clock):
    backend = InMemoryStorageBackend()
    publisher = Publisher(InMemorySharedCache(), fast_writer(backend), LAYOUT, issuer=ISSUER, clock=clock)

    report = await publisher.publish_once()

    assert report.skipped_reason == "no_snapshot"
    assert backend.write_count == 0


@pytest.mark.asyncio
async def test_identical_content_is_not_rewritten(clock, key_a):
    cache = InMemorySharedCache()
    backend = InMemoryStorageBackend()
    await seed(cache, key_a)
    publisher = Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER, clock=clock)
    await publisher.publish_once()

    report = await publisher.publish_once()

    assert set(report.outcomes.values()) == {PublishOutcome.UNCHANGED}
    assert backend.write_count == 2


@pytest.mark.asyncio
async def test_concurrent_writers_exactly_one_succeeds():
    racers = 5
    backend = RacingBackend(racers)
    writers = [fast_writer(backend) for _ in range(racers)]

    outcomes = await asyncio.gather(*(w.write("jwks", "mirror/openid/v1/jwks", b'{"keys": []}\n') for w in writers))

    assert outcomes.count(PublishOutcome.COMMITTED) == 1
    assert outcomes.count(PublishOutcome.PRECONDITION_FAILED) == racers - 1
    assert backend.write_count == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    backend = FlakyBackend(failures=2, error=TransientStorageError("503 SlowDown"))

    outcome = await fast_writer(backend, max_attempts=3).write("jwks", "a/jwks", b"{}")

    assert outcome == PublishOutcome.COMMITTED
    assert backend.write_attempts == 3


@pytest.mark.asyncio
async def test_transient_errors_give_up_after_max_attempts():
    backend = FlakyBackend(failures=10, error=TransientStorageError("503 SlowDown"))

    outcome = await fast_writer(backend, max_attempts=3).write("jwks", "a/jwks", b"{}")

    assert outcome == PublishOutcome.FAILED
    assert backend.write_attempts == 3
    assert await backend.read("a/jwks") is None


@pytest.mark.asyncio
async def test_permission_denied_is_not_retried(clock, key_a):
    cache = InMemorySharedCache()
    await seed(cache, key_a)
    backend = FlakyBackend(failures=10, error=PermissionDeniedError("AccessDenied"))
    publisher = Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER, clock=clock)

    report = await publisher.publish_once()

    assert backend.write_attempts == 1
    assert report.permission_denied
    assert not report.ok
    # Discovery is never written when the JWKS write failed
    assert "discovery" not in report.outcomes


@pytest.mark.asyncio
async def test_hung_storage_call_times_out():
    class HangingBackend(InMemoryStorageBackend):
        async def read(self, path):
            await asyncio.sleep(10)

    outcome = await fast_writer(HangingBackend(), attempt_timeout=0.01, max_attempts=2).write("jwks", "a", b"{}")

    assert outcome == PublishOutcome.FAILED


@pytest.mark.asyncio
async def test_two_replicas_publish_each_object_once(clock, key_a, upstream):
    """Leader bridge commits; both replicas' publishers react; one write per object."""
    cache = InMemorySharedCache()
    backend = RacingBackend(racers=2)
    upstream.key_set = KeySet([key_a])
    await Bridge(cache, upstream, issuer=ISSUER, clock=clock).poll()

    replicas = [Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER, clock=clock) for _ in range(2)]
    reports = await asyncio.gather(*(p.publish_once() for p in replicas))

    assert all(r.ok for r in reports)
    jwks_outcomes = sorted(r.outcomes["jwks"].value for r in reports)
    assert jwks_outcomes == ["committed", "precondition_failed"]
    # The discovery write of the losing replica finds identical bytes already published
    assert backend.write_count == 2


@pytest.mark.asyncio
async def test_run_publishes_latest_snapshot_after_notifications(clock, key_a, key_b):
    cache = InMemorySharedCache()
    backend = InMemoryStorageBackend()
    await seed(cache, key_a)
    publisher = Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER, clock=clock)
    task = asyncio.create_task(publisher.run())
    try:
        await wait_for_condition(lambda: publisher.last_report is not None)
        assert publisher.last_report.generation == 1

        # Two quick writes coalesce; the publisher re-reads and publishes the newest
        await seed(cache, key_b, generation=2)
        await seed(cache, key_a, key_b, generation=3)
        await wait_for_condition(lambda: publisher.last_report.generation == 3)

        jwks = json.loads((await backend.read(LAYOUT.jwks_path)).data)
        assert [k["kid"] for k in jwks["keys"]] == [key_a.kid, key_b.kid]
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


@pytest.mark.asyncio
async def test_fleet_mode_writes_cluster_record(clock, key_a):
    cache = InMemorySharedCache()
    backend = InMemoryStorageBackend()
    await seed(cache, key_a)
    layout = PublicationLayout(prefix="", fleet_name="prod")
    clock.advance(minutes=42)
    publisher = Publisher(cache, fast_writer(backend), layout, issuer=ISSUER, cluster_id="cluster-x",
                          heartbeat=timedelta(hours=1), clock=clock)

    report = await publisher.publish_once()

    assert report.outcomes == {"cluster_jwks": PublishOutcome.COMMITTED}
    record = json.loads((await backend.read("prod/clusters/cluster-x/openid/v1/jwks")).data)
    assert record["cluster_id"] == "cluster-x"
    assert record["last_published"] == T0.isoformat()
    assert await backend.read(layout.discovery_path) is None


def test_heartbeat_bucket_floors_to_interval():
    assert heartbeat_bucket(T0 + timedelta(minutes=59), timedelta(hours=1)) == T0
    assert heartbeat_bucket(T0 + timedelta(minutes=61), timedelta(hours=1)) == T0 + timedelta(hours=1)


async def stored_kids(backend):
    stored = await backend.read(LAYOUT.jwks_path)
    return [k["kid"] for k in json.loads(stored.data)["keys"]] if stored else None


@pytest.mark.asyncio
async def test_replicas_with_skewed_clocks_publish_identical_bytes(key_a, key_b):
    cache = InMemorySharedCache()
    backend = InMemoryStorageBackend()
    leader_clock = FakeClock()
    upstream = FakeUpstream(key_set=KeySet([key_a]), clock=leader_clock)
    bridge = Bridge(cache, upstream, issuer=ISSUER, overlap_duration=timedelta(hours=24), clock=leader_clock)
    await bridge.poll()
    leader_clock.advance(hours=10)
    upstream.key_set = KeySet([key_b])
    await bridge.poll()
    retire_at = leader_clock.now + timedelta(hours=24)

    ahead = Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER,
                      clock=FakeClock(retire_at + timedelta(seconds=1)))
    behind = Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER,
                       clock=FakeClock(retire_at - timedelta(seconds=1)))

    assert (await ahead.publish_once()).outcomes["jwks"] == PublishOutcome.COMMITTED
    report = await behind.publish_once()
    assert report.outcomes == {"jwks": PublishOutcome.UNCHANGED, "discovery": PublishOutcome.UNCHANGED}
    assert await stored_kids(backend) == [key_b.kid, key_a.kid]

    # Expiry reaches storage only through a new snapshot from the bridge
    leader_clock.now = retire_at
    assert await bridge.poll() == PollOutcome.COMMITTED
    await ahead.publish_once()
    assert await stored_kids(backend) == [key_b.kid]

    report = await behind.publish_once()
    assert report.outcomes["jwks"] == PublishOutcome.UNCHANGED
    assert await stored_kids(backend) == [key_b.kid]


@pytest.mark.asyncio
async def test_overlap_scenario_through_cache_and_storage(key_a, key_b):
    """[A] at 0h, [B] at 10h: storage shows [A,B] until 34h, then [B], never [A] or [] again."""
    cache = InMemorySharedCache()
    backend = InMemoryStorageBackend()
    clock = FakeClock()
    upstream = FakeUpstream(key_set=KeySet([key_a]), clock=clock)
    bridge = Bridge(cache, upstream, issuer=ISSUER, overlap_duration=timedelta(hours=24), clock=clock)
    publisher = Publisher(cache, fast_writer(backend), LAYOUT, issuer=ISSUER, clock=clock)
    history = []

    async def step(**advance):
        clock.advance(**advance)
        await bridge.poll()
        await publisher.publish_once()
        kids = await stored_kids(backend)
        history.append(kids)
        return kids

    assert await step() == [key_a.kid]

    upstream.key_set = KeySet([key_b])
    assert await step(hours=10) == [key_b.kid, key_a.kid]
    assert await step(minutes=1) == [key_b.kid, key_a.kid]
    assert bridge.next_poll_delay(60.0) == 60.0

    assert await step(hours=24, minutes=-1, seconds=-30) == [key_b.kid, key_a.kid]
    assert bridge.next_poll_delay(60.0) == 30.0

    assert await step(seconds=31) == [key_b.kid]
    assert await step(hours=1) == [key_b.kid]
    assert bridge.next_poll_delay(60.0) == 60.0

    after_rotation = history[1:]
    assert [key_a.kid] not in after_rotation
    assert [] not in history and None not in history
