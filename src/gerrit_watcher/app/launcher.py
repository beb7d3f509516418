"""Start isolated test runs and follow them to completion."""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Protocol

from .errors import SandboxLaunchError
from .ledger import RunLedger
from .models import RunOutcome, RunRecord, RunRequest, RunStatus

logger = logging.getLogger(__name__)


class RunHandle(Protocol):
    """A started sandbox process."""

    # Interleaved stdout/stderr, one bytes line at a time.
    output: Iterable[bytes]

    def wait(self) -> int: ...


class Sandbox(Protocol):
    def launch(self, revision_under_test: str, baseline_revision: str, run_name: str) -> RunHandle: ...


class PopenRunHandle:
    def __init__(self, process: subprocess.Popen[bytes]) -> None:
        if process.stdout is None:
            raise SandboxLaunchError("sandbox process has no output pipe")
        self._process = process
        self.output: IO[bytes] = process.stdout

    def wait(self) -> int:
        # Signal termination shows up as a negative return code.
        return self._process.wait()


class DockerSandbox:
    """Runs the test image in a named container with the two revisions bound in."""

    def __init__(
        self,
        *,
        image: str,
        under_test_env: str,
        baseline_env: str,
        remove_container: bool = True,
        docker_binary: str = "docker",
    ) -> None:
        self.image = image
        self.under_test_env = under_test_env
        self.baseline_env = baseline_env
        self.remove_container = remove_container
        self.docker_binary = docker_binary

    def command(self, revision_under_test: str, baseline_revision: str, run_name: str) -> list[str]:
        args = [self.docker_binary, "run"]
        if self.remove_container:
            args.append("--rm")
        args.extend(["--name", run_name])
        args.extend(["-e", f"{self.under_test_env}={revision_under_test}"])
        args.extend(["-e", f"{self.baseline_env}={baseline_revision}"])
        args.append(self.image)
        return args

    def launch(self, revision_under_test: str, baseline_revision: str, run_name: str) -> PopenRunHandle:
        args = self.command(revision_under_test, baseline_revision, run_name)
        logger.info("sandbox event=launch run_name=%s command=%s", run_name, " ".join(args))
        try:
            process = subprocess.Popen(  # noqa: S603
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            raise SandboxLaunchError(f"could not start {args[0]}: {exc}") from exc
        return PopenRunHandle(process)


def make_run_id(run_name: str, started_at: datetime) -> str:
    return f"{run_name}-{started_at.astimezone(UTC):%Y%m%dT%H%M%S%f}"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class ExecutionLauncher:
    """Turns RunRequests into ledger-tracked, logged sandbox executions.

    Every started run gets a ledger record before the sandbox is asked for a
    process, and exactly one terminal status update afterwards. No limit is
    placed on how many runs are in flight at once.
    """

    def __init__(
        self,
        *,
        ledger: RunLedger,
        sandbox: Sandbox,
        logs_dir: Path,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ledger = ledger
        self.sandbox = sandbox
        self.logs_dir = Path(logs_dir)
        self._clock = clock
        self._lock = threading.Lock()
        # Runs whose completion is in progress; the resolved future marks them afterwards.
        self._finishing: set[str] = set()
        self._threads: dict[str, threading.Thread] = {}

    def start(self, request: RunRequest) -> Future[RunOutcome]:
        started_at = self._clock()
        run_id = make_run_id(request.run_name, started_at)
        log_path = self.logs_dir / f"{run_id}.log"
        record = RunRecord(
            run_id=run_id,
            revision_under_test=request.revision_under_test,
            baseline_revision=request.baseline_revision,
            container_name=request.run_name,
            title=request.title,
            url=request.url,
            status="running",
            log_path=log_path.name,
            started_at=started_at,
        )
        self.ledger.append(record)
        logger.info(
            "run event=start run_id=%s under_test=%s baseline=%s title=%r",
            run_id,
            request.revision_under_test,
            request.baseline_revision,
            request.title,
        )

        future: Future[RunOutcome] = Future()
        # Running futures cannot be cancelled by callers.
        future.set_running_or_notify_cancel()
        log_file: IO[bytes] | None = None
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_path.open("ab")
            handle = self.sandbox.launch(
                request.revision_under_test,
                request.baseline_revision,
                request.run_name,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("run event=launch_failed run_id=%s reason=%s", run_id, exc)
            if log_file is not None:
                log_file.write(f"gerrit-watcher: failed to launch run: {exc}\n".encode())
                log_file.close()
            self._finish(record, request, future, exit_code=None, log_path=log_path)
            return future

        thread = threading.Thread(
            target=self._supervise,
            args=(record, request, future, handle, log_file, log_path),
            name=f"run-{run_id}",
            daemon=True,
        )
        with self._lock:
            self._threads[run_id] = thread
        thread.start()
        return future

    def join(self, timeout: float | None = None) -> None:
        """Wait for every supervisor thread started so far."""
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    def _supervise(
        self,
        record: RunRecord,
        request: RunRequest,
        future: Future[RunOutcome],
        handle: RunHandle,
        log_file: IO[bytes],
        log_path: Path,
    ) -> None:
        exit_code: int | None = None
        try:
            with log_file:
                for line in handle.output:
                    log_file.write(line)
                    # Flush per line so partial logs are readable while the run is going.
                    log_file.flush()
            exit_code = handle.wait()
        except Exception:  # noqa: BLE001
            logger.exception("run event=supervise_failed run_id=%s", record.run_id)
        finally:
            self._finish(record, request, future, exit_code=exit_code, log_path=log_path)
            with self._lock:
                self._threads.pop(record.run_id, None)

    def _finish(
        self,
        record: RunRecord,
        request: RunRequest,
        future: Future[RunOutcome],
        *,
        exit_code: int | None,
        log_path: Path,
    ) -> None:
        with self._lock:
            if future.done() or record.run_id in self._finishing:
                return
            self._finishing.add(record.run_id)

        status: RunStatus = "passed" if exit_code == 0 else "failed"
        try:
            self.ledger.update_status(record.run_id, status, exit_code=exit_code)
        except Exception:  # noqa: BLE001
            logger.exception("run event=status_update_failed run_id=%s", record.run_id)
        logger.info(
            "run event=finished run_id=%s status=%s exit_code=%s",
            record.run_id,
            status,
            exit_code,
        )

        outcome = RunOutcome(
            run_id=record.run_id,
            run_name=record.container_name,
            title=record.title,
            status=status,
            exit_code=exit_code,
            log_path=log_path,
        )
        # The hook runs before the future resolves, so waiters observe its effects.
        if request.on_complete is not None:
            try:
                request.on_complete(outcome)
            except Exception:  # noqa: BLE001
                logger.exception("run event=completion_hook_failed run_id=%s", record.run_id)
        future.set_result(outcome)
        with self._lock:
            self._finishing.discard(record.run_id)
