import asyncio
import pytest
from unittest.mock import MagicMock

from oidc_bridge.services.bridge import PollOutcome
from oidc_bridge.services.publisher import PublishOutcome, PublishReport
from oidc_bridge.shared.core.health import HealthService


def make_controller(poll=PollOutcome.COMMITTED, report=None, is_leader=True, tasks=None):
    controller = MagicMock()
    controller.started = True
    controller.tasks = tasks if tasks is not None else {}
    controller.elector.identity = "pod-a"
    controller.elector.is_leader = is_leader
    controller.bridge.last_outcome = poll
    controller.publisher.last_report = report
    return controller


def test_health_service_all_ok():
    report = PublishReport(generation=3, outcomes={"jwks": PublishOutcome.UNCHANGED})
    health = HealthService(make_controller(report=report)).check_all()

    assert health["status"] == "healthy"
    assert health["bridge"] == {"status": "up", "last_poll": "committed"}
    assert health["publisher"]["generation"] == 3


def test_upstream_outage_is_degraded():
    health = HealthService(make_controller(poll=PollOutcome.FETCH_ERROR)).check_all()

    assert health["status"] == "degraded"
    assert health["bridge"]["status"] == "down"


def test_followers_do_not_report_bridge_state():
    health = HealthService(make_controller(poll=PollOutcome.FETCH_ERROR, is_leader=False)).check_all()

    assert health["status"] == "healthy"
    assert health["bridge"]["message"] == "follower"


def test_permission_denied_is_unhealthy():
    report = PublishReport(generation=1, outcomes={"jwks": PublishOutcome.PERMISSION_DENIED})
    health = HealthService(make_controller(report=report)).check_all()

    assert health["status"] == "unhealthy"
    assert health["publisher"]["permission_denied"] is True


@pytest.mark.asyncio
async def test_crashed_task_is_unhealthy():
    async def crash():
        raise RuntimeError("loop died")

    task = asyncio.create_task(crash())
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    health = HealthService(make_controller(tasks={"publisher": task})).check_all()

    assert health["status"] == "unhealthy"
    assert health["tasks"]["crashed"] == {"publisher": "loop died"}


def test_not_started_is_unhealthy():
    controller = make_controller()
    controller.started = False

    assert HealthService(controller).check_all()["status"] == "unhealthy"
