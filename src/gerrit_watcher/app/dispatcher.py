"""Follow the Gerrit event stream and start runs for eligible patch sets."""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future
from typing import Any, Literal, Protocol

from pydantic import ValidationError

from .launcher import ExecutionLauncher
from .ledger import RunLedger
from .models import PatchsetCreatedEvent, RunOutcome, RunRequest
from .reporter import OutcomeReporter
from .version import is_eligible

logger = logging.getLogger(__name__)

FeedState = Literal["disconnected", "subscribed", "receiving", "stream-ended", "stopped"]


class EventFeed(Protocol):
    def subscribe(self) -> Iterator[dict[str, Any]]:
        """Yield events until the stream ends."""
        ...

    def close(self) -> None: ...


class GerritEventStream:
    """`gerrit stream-events` over ssh, one JSON object per line."""

    def __init__(self, *, destination: str, port: int = 29418) -> None:
        self.destination = destination
        self.port = port
        self._process: subprocess.Popen[str] | None = None
        self._lock = threading.Lock()

    def command(self) -> list[str]:
        return [
            "ssh",
            "-p",
            str(self.port),
            self.destination,
            "gerrit",
            "stream-events",
            "-s",
            "patchset-created",
        ]

    def subscribe(self) -> Iterator[dict[str, Any]]:
        process = subprocess.Popen(  # noqa: S603
            self.command(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        if process.stdout is None:
            self._terminate(process)
            raise OSError("event stream process has no output pipe")
        with self._lock:
            self._process = process
        try:
            for raw_line in process.stdout:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except ValueError:
                    logger.warning("feed event=bad_line line=%r", line[:200])
                    continue
                if isinstance(payload, dict):
                    yield payload
        finally:
            self._terminate(process)

    def close(self) -> None:
        with self._lock:
            process = self._process
        if process is not None:
            self._terminate(process)

    def _terminate(self, process: subprocess.Popen[str]) -> None:
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=5)
        with self._lock:
            if self._process is process:
                self._process = None


def run_name_for(event: PatchsetCreatedEvent) -> str:
    return f"gerrit-watcher-{event.change.number}-{event.patch_set.number}"


def title_for(event: PatchsetCreatedEvent) -> str:
    return (
        f"{event.change.number},{event.patch_set.number} "
        f"({event.change.branch}) - {event.change.subject}"
    )


class EventDispatcher:
    """Maps patch-set events to runs and keeps the feed subscription alive."""

    def __init__(
        self,
        *,
        feed: EventFeed,
        launcher: ExecutionLauncher,
        ledger: RunLedger,
        reporter: OutcomeReporter | None,
        project: str,
        reconnect_delay_s: float = 0.0,
        eligibility: Callable[[str], bool] = is_eligible,
    ) -> None:
        self.feed = feed
        self.launcher = launcher
        self.ledger = ledger
        self.reporter = reporter
        self.project = project
        self.reconnect_delay_s = reconnect_delay_s
        self.eligibility = eligibility
        self.state: FeedState = "disconnected"
        self.subscriptions = 0
        self._stop = threading.Event()

    def run(self) -> None:
        """Subscribe, dispatch events, and resubscribe whenever the stream ends."""
        while not self._stop.is_set():
            self.state = "subscribed"
            self.subscriptions += 1
            logger.info("feed event=subscribed attempt=%d", self.subscriptions)
            try:
                for payload in self.feed.subscribe():
                    if self._stop.is_set():
                        break
                    self.state = "receiving"
                    self.handle_event(payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning("feed event=error reason=%s", exc)
            if self._stop.is_set():
                break
            self.state = "stream-ended"
            logger.info("feed event=stream_ended")
            self.state = "disconnected"
            if self.reconnect_delay_s > 0 and self._stop.wait(self.reconnect_delay_s):
                break
        self.state = "stopped"

    def stop(self) -> None:
        self._stop.set()
        self.feed.close()

    def handle_event(self, payload: dict[str, Any]) -> Future[RunOutcome] | None:
        """Start a run for one raw event, or return None when it is filtered out."""
        if payload.get("type", "patchset-created") != "patchset-created":
            return None
        try:
            event = PatchsetCreatedEvent.model_validate(payload)
        except ValidationError as exc:
            logger.warning("dispatch event=invalid_payload errors=%d", exc.error_count())
            return None

        change = event.change
        if change.project != self.project:
            return None
        if not self.eligibility(change.branch):
            logger.info(
                "dispatch event=ineligible_branch commit=%s branch=%s",
                event.commit_id,
                change.branch,
            )
            return None

        run_name = run_name_for(event)
        in_flight = self.ledger.find_running(run_name)
        if in_flight is not None:
            logger.info(
                "dispatch event=duplicate_skipped commit=%s run_id=%s",
                event.commit_id,
                in_flight.run_id,
            )
            return None

        change_number = change.number
        patchset_number = event.patch_set.number
        reporter = self.reporter

        def notify(outcome: RunOutcome) -> None:
            if reporter is not None:
                reporter.report(outcome, change_number, patchset_number)

        request = RunRequest(
            revision_under_test=event.patch_set.ref,
            baseline_revision=change.branch,
            run_name=run_name,
            title=title_for(event),
            url=change.url,
            on_complete=notify,
        )
        logger.info("dispatch event=start commit=%s url=%s", event.commit_id, change.url)
        return self.launcher.start(request)
