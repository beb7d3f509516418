from __future__ import annotations


class WatcherError(RuntimeError):
    """Base class for errors raised by gerrit-watcher components."""


class LedgerError(WatcherError):
    pass


class DuplicateRunError(LedgerError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} is already recorded in the ledger")
        self.run_id = run_id


class InvalidTransitionError(LedgerError):
    def __init__(self, run_id: str, current: str, requested: str) -> None:
        super().__init__(f"Run {run_id} cannot move from {current!r} to {requested!r}")
        self.run_id = run_id
        self.current = current
        self.requested = requested


class SandboxLaunchError(WatcherError):
    """The sandbox could not produce a running process."""
