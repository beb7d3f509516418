from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from gerrit_watcher.app.config import Settings
from gerrit_watcher.app.launcher import ExecutionLauncher
from gerrit_watcher.app.ledger import RunLedger
from gerrit_watcher.app.runtime import WatcherRuntime, build_runtime


class FakeRunHandle:
    """Test-only stand-in for a sandbox process."""

    def __init__(self, lines: list[bytes], exit_code: int, gate: threading.Event | None = None) -> None:
        self._lines = lines
        self._exit_code = exit_code
        self._gate = gate

    @property
    def output(self) -> Iterator[bytes]:
        yield from self._lines
        if self._gate is not None:
            self._gate.wait(timeout=5)

    def wait(self) -> int:
        return self._exit_code


class FakeSandbox:
    def __init__(self, *, exit_code: int = 0, lines: list[bytes] | None = None) -> None:
        self.exit_code = exit_code
        self.lines = lines if lines is not None else [b"building\n", b"running tests\n"]
        self.launches: list[tuple[str, str, str]] = []
        self.launch_error: Exception | None = None
        self.gate: threading.Event | None = None
        self.on_launch: Callable[[str], None] | None = None

    def launch(self, revision_under_test: str, baseline_revision: str, run_name: str) -> FakeRunHandle:
        self.launches.append((revision_under_test, baseline_revision, run_name))
        if self.on_launch is not None:
            self.on_launch(run_name)
        if self.launch_error is not None:
            raise self.launch_error
        return FakeRunHandle(list(self.lines), self.exit_code, self.gate)


class FakeReviewChannel:
    def __init__(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self.calls: list[tuple[str, str, int | None]] = []

    def post_comment(self, commit: str, message: str, score: int | None = None) -> int:
        self.calls.append((commit, message, score))
        return self.exit_code


class FakeEventFeed:
    """Replays one batch of events per subscription, then calls `on_exhausted`."""

    def __init__(self, batches: list[list[dict[str, Any]]] | None = None) -> None:
        self.batches = list(batches or [])
        self.subscriptions = 0
        self.closed = False
        self.on_exhausted: Callable[[], None] | None = None

    def subscribe(self) -> Iterator[dict[str, Any]]:
        self.subscriptions += 1
        if not self.batches:
            if self.on_exhausted is not None:
                self.on_exhausted()
            return
        yield from self.batches.pop(0)

    def close(self) -> None:
        self.closed = True


def patchset_event(
    *,
    project: str = "qt/qtwayland",
    branch: str = "5.11",
    change: int = 100,
    patchset: int = 1,
    subject: str = "Fix crash on output removal",
) -> dict[str, Any]:
    return {
        "type": "patchset-created",
        "change": {
            "project": project,
            "branch": branch,
            "subject": subject,
            "url": f"https://codereview.qt-project.org/{change}",
            "number": str(change),
            "owner": {"name": "Jane Developer", "email": "jane@example.com"},
        },
        "patchSet": {
            "number": patchset,
            "ref": f"refs/changes/{change % 100:02d}/{change}/{patchset}",
        },
    }


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        ledger_path=tmp_path / "data" / "ledger.json",
        logs_dir=tmp_path / "logs",
        enable_event_feed=False,
        enable_scheduler=False,
        public_url="http://watcher.example.com",
    )


@pytest.fixture
def ledger(tmp_path: Path) -> Iterator[RunLedger]:
    store = RunLedger(tmp_path / "ledger.json")
    yield store
    store.close()


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def channel() -> FakeReviewChannel:
    return FakeReviewChannel()


@pytest.fixture
def launcher(ledger: RunLedger, sandbox: FakeSandbox, tmp_path: Path) -> ExecutionLauncher:
    return ExecutionLauncher(ledger=ledger, sandbox=sandbox, logs_dir=tmp_path / "logs")


@pytest.fixture
def runtime(settings: Settings, sandbox: FakeSandbox, channel: FakeReviewChannel) -> WatcherRuntime:
    return build_runtime(settings, sandbox=sandbox, channel=channel, feed=FakeEventFeed())


@pytest.fixture
def client(runtime: WatcherRuntime) -> Iterator[TestClient]:
    from gerrit_watcher.main import create_app

    app = create_app(runtime=runtime)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    return patchset_event
