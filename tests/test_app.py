import asyncio
import json
import pytest
from httpx import AsyncClient, ASGITransport

from oidc_bridge.controller import Controller
from oidc_bridge.main import app
from oidc_bridge.models.keys import KeySet
from oidc_bridge.services.cache.memory import InMemorySharedCache
from oidc_bridge.services.leader import StaticLeaderElector
from oidc_bridge.shared.adapters.memory import InMemoryStorageBackend
from oidc_bridge.shared.core.config import Settings
from oidc_bridge.shared.core.exceptions import IssuerMismatchError, PermissionDeniedError

from conftest import ISSUER, FakeUpstream


def build_settings(**overrides) -> Settings:
    params = {
        "TESTING": True,
        "STORAGE_BACKEND": "memory",
        "CACHE_BACKEND": "memory",
        "LEADER_ELECTION_ENABLED": False,
        "PUBLIC_BASE_URL": ISSUER,
        "STORAGE_MAX_ATTEMPTS": 1,
    }
    params.update(overrides)
    return Settings(**params)


def make_controller(key_entries, backend=None, upstream=None, **overrides) -> Controller:
    upstream = upstream or FakeUpstream(key_set=KeySet(key_entries))
    return Controller(
        build_settings(**overrides),
        backend=backend or InMemoryStorageBackend(),
        cache=InMemorySharedCache(),
        elector=StaticLeaderElector(is_leader=True, identity="pod-a"),
        upstream=upstream,
    )


async def wait_for_condition(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def reset_app_state():
    yield
    for attr in ("controller", "health"):
        if hasattr(app.state, attr):
            delattr(app.state, attr)


@pytest.mark.asyncio
async def test_controller_mirrors_upstream_keys(key_a):
    controller = make_controller([key_a])
    await controller.validate()
    await controller.start()
    try:
        async def published():
            return await controller.backend.read("openid/v1/jwks") is not None
        await wait_for_condition(published)

        jwks = json.loads((await controller.backend.read("openid/v1/jwks")).data)
        assert [k["kid"] for k in jwks["keys"]] == [key_a.kid]
        assert await controller.backend.read(".well-known/openid-configuration") is not None
        assert controller.get_status()["is_leader"] is True
    finally:
        await controller.stop()
    assert controller.upstream.closed


@pytest.mark.asyncio
async def test_validate_rejects_issuer_mismatch(key_a):
    upstream = FakeUpstream(issuer=ISSUER + "/", key_set=KeySet([key_a]))
    controller = make_controller([key_a], upstream=upstream)

    with pytest.raises(IssuerMismatchError) as exc:
        await controller.validate()
    assert exc.value.details == {"configured": ISSUER, "upstream": ISSUER + "/"}


@pytest.mark.asyncio
async def test_fleet_controller_publishes_cluster_record_and_aggregate(key_a):
    controller = make_controller([key_a], FLEET_NAME="prod", CLUSTER_ID="cluster-x")
    await controller.start()
    try:
        async def record_published():
            return await controller.backend.read("prod/clusters/cluster-x/openid/v1/jwks") is not None
        await wait_for_condition(record_published)

        aggregate = await controller.fleet.aggregate()

        assert aggregate.clusters == ["cluster-x"]
        assert await controller.backend.read("prod/openid/v1/jwks") is not None
    finally:
        await controller.stop()


@pytest.mark.asyncio
async def test_health_and_readiness_endpoints(key_a, reset_app_state):
    app.state.controller = make_controller([key_a])
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            async def published():
                report = app.state.controller.publisher.last_report
                return report is not None and report.generation is not None
            await wait_for_condition(published)

            response = await ac.get("/health")
            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "healthy"
            assert data["leader"] == {"identity": "pod-a", "is_leader": True}
            assert "publisher" in data["tasks"]["running"]

            response = await ac.get("/ready")
            assert response.status_code == 200

            response = await ac.get("/metrics")
            assert response.status_code == 200
            assert "oidc_bridge_polls_total" in response.text


@pytest.mark.asyncio
async def test_permission_denied_fails_readiness(key_a, reset_app_state):
    class DeniedBackend(InMemoryStorageBackend):
        async def write_if_match(self, *args, **kwargs):
            raise PermissionDeniedError("AccessDenied")

    app.state.controller = make_controller([key_a], backend=DeniedBackend())
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            async def attempted():
                return app.state.controller.publisher.last_report is not None \
                    and app.state.controller.publisher.last_report.generation is not None
            await wait_for_condition(attempted)

            response = await ac.get("/ready")
            assert response.status_code == 503
            assert response.json()["publisher"]["permission_denied"] is True
