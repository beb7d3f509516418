"""Wiring of the long-running watcher components.

Beginner terms:
- Runtime: the set of objects that live for the whole process (ledger,
  launcher, reporter, dispatcher, scheduler).
- Worker thread: the dispatcher and the scheduler each loop on their own
  daemon thread so the HTTP server stays responsive.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import Settings
from .dispatcher import EventDispatcher, EventFeed, GerritEventStream
from .launcher import DockerSandbox, ExecutionLauncher, Sandbox
from .ledger import RunLedger
from .reporter import GerritReviewChannel, OutcomeReporter, ReviewChannel
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class WatcherRuntime:
    settings: Settings
    ledger: RunLedger
    launcher: ExecutionLauncher
    reporter: OutcomeReporter
    dispatcher: EventDispatcher
    scheduler: Scheduler
    threads: list[threading.Thread] = field(default_factory=list)

    def start(self) -> None:
        self.settings.logs_dir.mkdir(parents=True, exist_ok=True)
        self.ledger.load()

        if self.settings.enable_event_feed:
            self._spawn("event-dispatcher", self.dispatcher.run)
        if self.settings.enable_scheduler:
            self._spawn("health-check-scheduler", self.scheduler.run)
        if self.settings.startup_check_revision:
            self.scheduler.fire(self.settings.startup_check_revision)
        logger.info(
            "runtime event=started project=%s feed=%s scheduler=%s",
            self.settings.project,
            self.settings.enable_event_feed,
            self.settings.enable_scheduler,
        )

    def stop(self) -> None:
        # In-flight runs are not cancelled; their records become aborted on next load.
        self.dispatcher.stop()
        self.scheduler.stop()
        for thread in self.threads:
            thread.join(timeout=5)
        self.threads.clear()
        self.ledger.close()
        logger.info("runtime event=stopped")

    def _spawn(self, name: str, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self.threads.append(thread)


def build_runtime(
    settings: Settings,
    *,
    sandbox: Sandbox | None = None,
    channel: ReviewChannel | None = None,
    feed: EventFeed | None = None,
) -> WatcherRuntime:
    """Build the runtime from settings; collaborators can be swapped for tests."""
    ledger = RunLedger(settings.ledger_path)
    launcher = ExecutionLauncher(
        ledger=ledger,
        sandbox=sandbox
        or DockerSandbox(
            image=settings.docker_image,
            under_test_env=settings.under_test_env,
            baseline_env=settings.baseline_env,
            remove_container=settings.docker_remove_container,
        ),
        logs_dir=settings.logs_dir,
    )
    reporter = OutcomeReporter(
        channel
        or GerritReviewChannel(
            destination=settings.ssh_destination(),
            port=settings.gerrit_port,
            label=settings.review_label,
        ),
        tail_lines=settings.log_tail_lines,
        failure_score=settings.failure_score,
        public_url=settings.public_url,
    )
    dispatcher = EventDispatcher(
        feed=feed or GerritEventStream(destination=settings.ssh_destination(), port=settings.gerrit_port),
        launcher=launcher,
        ledger=ledger,
        reporter=reporter,
        project=settings.project,
        reconnect_delay_s=settings.reconnect_delay_s,
    )
    scheduler = Scheduler(launcher=launcher, triggers=settings.health_checks)
    return WatcherRuntime(
        settings=settings,
        ledger=ledger,
        launcher=launcher,
        reporter=reporter,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )
