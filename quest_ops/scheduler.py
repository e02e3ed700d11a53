"""Background polling for the console: active squads monitor, ops and support sweeps."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

from apscheduler.schedulers.background import BackgroundScheduler

from .backend import BackendError
from .models import Severity
from .service import ConsoleService
from .services.squads import ActiveSquadSummary

logger = logging.getLogger(__name__)


class ConsoleScheduler:
    """Runs the console's interval jobs on an APScheduler background thread."""

    def __init__(
        self,
        service: ConsoleService,
        *,
        watched_instances: Optional[Iterable[str]] = None,
        route_alerts: bool = True,
    ) -> None:
        self.service = service
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self._watched: List[str] = list(dict.fromkeys(watched_instances or []))
        self._route_alerts = route_alerts
        self._routed: Set[str] = set()
        self._lock = threading.Lock()
        self.active_squads: Dict[str, List[ActiveSquadSummary]] = {}

    def watch(self, instance_id: str) -> None:
        with self._lock:
            if instance_id not in self._watched:
                self._watched.append(instance_id)

    def unwatch(self, instance_id: str) -> None:
        with self._lock:
            if instance_id in self._watched:
                self._watched.remove(instance_id)
            self.active_squads.pop(instance_id, None)

    def start(self) -> None:
        settings = self.service.settings
        jobs = (
            ("active_squads", self.refresh_active_squads, settings.active_squads_refresh_seconds),
            ("ops_sweep", self.ops_sweep, settings.ops_sweep_seconds),
            ("support_sweep", self.support_sweep, settings.support_sweep_seconds),
        )
        for job_id, func, seconds in jobs:
            self.scheduler.add_job(
                func,
                "interval",
                seconds=seconds,
                id=job_id,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info(
            "Console scheduler started (active squads every %ss, ops sweep every %ss, "
            "support sweep every %ss)",
            settings.active_squads_refresh_seconds,
            settings.ops_sweep_seconds,
            settings.support_sweep_seconds,
        )

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=False)

    def refresh_active_squads(self) -> None:
        with self._lock:
            watched = list(self._watched)
        for instance_id in watched:
            try:
                summaries = self.service.active_squads(instance_id, refresh=True)
            except (BackendError, ValueError):
                logger.exception("Active squads refresh failed for instance %s", instance_id)
                continue
            with self._lock:
                if instance_id in self._watched:
                    self.active_squads[instance_id] = summaries

    def ops_sweep(self) -> int:
        """Refresh ops alerts and route error alerts not yet routed by this process.

        Ids of alerts that have cleared are forgotten, so an alert that clears
        and later fires again is routed again.
        """

        try:
            alerts = self.service.ops_alerts(refresh=True)
        except (BackendError, ValueError):
            logger.exception("Ops sweep failed to load alerts")
            return 0
        self._routed &= {alert.id for alert in alerts}
        routed = 0
        for alert in alerts:
            if alert.severity is not Severity.ERROR or alert.id in self._routed:
                continue
            self._routed.add(alert.id)
            if self._route_alerts and self.service.route_alert(alert):
                routed += 1
        if routed:
            logger.info("Ops sweep routed %d new error alerts", routed)
        return routed

    def support_sweep(self) -> int:
        """Report new SLA breaches and warm-up squads; returns how many were reported."""

        reported = 0
        try:
            reported += len(self.service.check_sla_breaches())
        except (BackendError, ValueError):
            logger.exception("SLA breach check failed")
        try:
            result = self.service.notify_warmup_status()
            reported += len(result.ready_for_review) + len(result.stalled)
        except (BackendError, ValueError):
            logger.exception("Warm-up status check failed")
        return reported


__all__ = ["ConsoleScheduler", "BackgroundScheduler"]
