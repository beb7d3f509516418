"""Post run results back to Gerrit as review comments."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections import deque
from pathlib import Path
from typing import Protocol

from .models import RunOutcome

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 30
QUOTE_INDENT = "    "


class ReviewChannel(Protocol):
    def post_comment(self, commit: str, message: str, score: int | None = None) -> int:
        """Send `message` for `"<change>,<patchset>"`; return the command's exit code."""
        ...


class GerritReviewChannel:
    """`gerrit review` over the Gerrit ssh command interface."""

    def __init__(
        self,
        *,
        destination: str,
        port: int = 29418,
        label: str = "code-review",
        timeout_s: float = 60.0,
    ) -> None:
        self.destination = destination
        self.port = port
        self.label = label
        self.timeout_s = timeout_s

    def command(self, commit: str, message: str, score: int | None = None) -> list[str]:
        # The message crosses a remote shell, so it must be quoted for it.
        args = [
            "ssh",
            "-p",
            str(self.port),
            self.destination,
            "gerrit",
            "review",
            "--message",
            shlex.quote(message),
        ]
        if score is not None:
            args.extend([f"--{self.label}", str(score)])
        args.append(commit)
        return args

    def post_comment(self, commit: str, message: str, score: int | None = None) -> int:
        completed = subprocess.run(  # noqa: S603
            self.command(commit, message, score),
            capture_output=True,
            text=True,
            check=False,
            timeout=self.timeout_s,
        )
        if completed.returncode != 0:
            logger.warning(
                "gerrit review stderr commit=%s stderr=%s",
                commit,
                completed.stderr.strip(),
            )
        return completed.returncode


def read_log_tail(path: Path, lines: int = DEFAULT_TAIL_LINES) -> list[str]:
    """Return the last `lines` lines of a run log, without line endings."""
    with path.open("r", encoding="utf-8", errors="replace") as f:
        tail = deque(f, maxlen=lines)
    return [line.rstrip("\r\n") for line in tail]


class OutcomeReporter:
    """Composes and sends one review comment per finished event-triggered run."""

    def __init__(
        self,
        channel: ReviewChannel,
        *,
        tail_lines: int = DEFAULT_TAIL_LINES,
        failure_score: int = -1,
        public_url: str = "",
    ) -> None:
        self.channel = channel
        self.tail_lines = tail_lines
        self.failure_score = failure_score
        self.public_url = public_url.rstrip("/")

    def compose(self, outcome: RunOutcome) -> str:
        if outcome.passed:
            headline = f"gerrit-watcher: {outcome.run_name} PASSED"
        elif outcome.exit_code is None:
            headline = f"gerrit-watcher: {outcome.run_name} FAILED (the test run could not be started)"
        else:
            headline = f"gerrit-watcher: {outcome.run_name} FAILED with exit code {outcome.exit_code}"
        parts = [headline, "", outcome.title]
        if self.public_url:
            parts.extend(["", f"Full log: {self.public_url}/logs/{outcome.log_path.name}"])
        return "\n".join(parts)

    def report(self, outcome: RunOutcome, change_number: int | str, patchset_number: int | str) -> bool:
        """Send the comment; returns False when the review command failed."""
        commit = f"{change_number},{patchset_number}"
        message = self.compose(outcome)
        score: int | None = None
        if not outcome.passed:
            score = self.failure_score
            try:
                tail = read_log_tail(outcome.log_path, self.tail_lines)
            except OSError as exc:
                # A missing excerpt must not suppress the notification itself.
                logger.error(
                    "report event=log_tail_failed run_id=%s path=%s reason=%s",
                    outcome.run_id,
                    outcome.log_path,
                    exc,
                )
            else:
                if tail:
                    excerpt = "\n".join(f"{QUOTE_INDENT}{line}" for line in tail)
                    message = f"{message}\n\nLast {len(tail)} lines of the log:\n\n{excerpt}"

        try:
            exit_code = self.channel.post_comment(commit, message, score)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("report event=send_failed commit=%s reason=%s", commit, exc)
            return False
        if exit_code != 0:
            logger.error("report event=send_failed commit=%s exit_code=%d", commit, exit_code)
            return False
        logger.info("report event=sent commit=%s status=%s score=%s", commit, outcome.status, score)
        return True
