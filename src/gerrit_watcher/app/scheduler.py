"""Daily health-check runs, independent of the event stream."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from datetime import datetime, timedelta

from .config import HealthCheckTrigger
from .launcher import ExecutionLauncher
from .models import RunOutcome, RunRequest

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")


def _local_now() -> datetime:
    return datetime.now().astimezone()


def next_firing(
    now: datetime,
    triggers: Sequence[HealthCheckTrigger],
) -> tuple[datetime, HealthCheckTrigger]:
    """Earliest trigger strictly after `now`, today or tomorrow."""
    if not triggers:
        raise ValueError("at least one health-check trigger is required")
    candidates: list[tuple[datetime, HealthCheckTrigger]] = []
    for trigger in triggers:
        at = now.replace(
            hour=trigger.at.hour,
            minute=trigger.at.minute,
            second=trigger.at.second,
            microsecond=trigger.at.microsecond,
        )
        if at <= now:
            at += timedelta(days=1)
        candidates.append((at, trigger))
    return min(candidates, key=lambda item: item[0])


def health_check_name(revision: str, fired_at: datetime) -> str:
    slug = _UNSAFE_NAME_CHARS.sub("-", revision).strip("-") or "revision"
    return f"gerrit-watcher-healthcheck-{slug}-{int(fired_at.timestamp())}"


class Scheduler:
    """Fires one health-check run per trigger per day.

    Firings missed while the process was down are skipped, not caught up.
    """

    def __init__(
        self,
        *,
        launcher: ExecutionLauncher,
        triggers: Sequence[HealthCheckTrigger],
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self.launcher = launcher
        self.triggers = list(triggers)
        self._clock = clock
        self._stop = threading.Event()

    def fire(self, revision: str) -> Future[RunOutcome]:
        fired_at = self._clock()
        request = RunRequest(
            revision_under_test=revision,
            baseline_revision=revision,
            run_name=health_check_name(revision, fired_at),
            title=f"health check {fired_at:%Y-%m-%d} ({revision})",
        )
        logger.info("schedule event=fire revision=%s run_name=%s", revision, request.run_name)
        return self.launcher.start(request)

    def run(self) -> None:
        if not self.triggers:
            logger.info("schedule event=disabled reason=no triggers")
            return
        last_firing: datetime | None = None
        while not self._stop.is_set():
            now = self._clock()
            # The wait may end a little before the wall clock reaches the firing.
            if last_firing is not None and now < last_firing:
                now = last_firing
            when, trigger = next_firing(now, self.triggers)
            delay = (when - now).total_seconds()
            logger.info("schedule event=next at=%s revision=%s", when.isoformat(), trigger.revision)
            if self._stop.wait(delay):
                break
            last_firing = when
            try:
                self.fire(trigger.revision)
            except Exception:  # noqa: BLE001
                logger.exception("schedule event=fire_failed revision=%s", trigger.revision)

    def stop(self) -> None:
        self._stop.set()
