from typing import TYPE_CHECKING, Any, Dict

import structlog

from oidc_bridge.services.bridge import PollOutcome

if TYPE_CHECKING:
    from oidc_bridge.controller import Controller

logger = structlog.get_logger()

DEGRADED_POLL_OUTCOMES = (PollOutcome.FETCH_ERROR, PollOutcome.CACHE_ERROR, PollOutcome.CONFLICT)


class HealthService:
    def __init__(self, controller: "Controller"):
        self.controller = controller

    def check_all(self) -> Dict[str, Any]:
        """Aggregates component status. `unhealthy` means operator action is needed."""
        tasks_ok, tasks_details = self.check_tasks()
        publisher_ok, publisher_details = self.check_publisher()
        bridge_ok, bridge_details = self.check_bridge()

        overall_status = "healthy"
        if not tasks_ok or publisher_details.get("permission_denied"):
            overall_status = "unhealthy"
        elif not publisher_ok or not bridge_ok:
            overall_status = "degraded"

        return {
            "status": overall_status,
            "leader": {
                "identity": self.controller.elector.identity,
                "is_leader": self.controller.elector.is_leader,
            },
            "tasks": {"status": "up" if tasks_ok else "down", **tasks_details},
            "publisher": {"status": "up" if publisher_ok else "down", **publisher_details},
            "bridge": {"status": "up" if bridge_ok else "down", **bridge_details},
        }

    def check_tasks(self) -> tuple[bool, Dict[str, Any]]:
        """Every background loop runs until shutdown; a finished one has crashed."""
        if not self.controller.started:
            return False, {"error": "controller not started"}
        crashed = {}
        for name, task in self.controller.tasks.items():
            if task.done() and not task.cancelled():
                exc = task.exception()
                crashed[name] = str(exc) if exc else "exited"
        if crashed:
            logger.error("health_check_tasks_failed", crashed=crashed)
            return False, {"crashed": crashed}
        return True, {"running": sorted(self.controller.tasks)}

    def check_publisher(self) -> tuple[bool, Dict[str, Any]]:
        report = self.controller.publisher.last_report
        if report is None:
            return True, {"message": "no publish cycle yet"}
        details: Dict[str, Any] = {
            "generation": report.generation,
            "outcomes": {k: v.value for k, v in report.outcomes.items()},
        }
        if report.skipped_reason:
            details["skipped_reason"] = report.skipped_reason
        if report.permission_denied:
            details["permission_denied"] = True
        return report.ok, details

    def check_bridge(self) -> tuple[bool, Dict[str, Any]]:
        if not self.controller.elector.is_leader:
            return True, {"message": "follower"}
        outcome = self.controller.bridge.last_outcome
        if outcome is None:
            return True, {"message": "no poll yet"}
        if outcome == PollOutcome.ISSUER_MISMATCH:
            return False, {"last_poll": outcome.value, "error": "upstream issuer differs from PUBLIC_BASE_URL"}
        return outcome not in DEGRADED_POLL_OUTCOMES, {"last_poll": outcome.value}
