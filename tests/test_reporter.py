from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

import pytest
from conftest import FakeReviewChannel

from gerrit_watcher.app.models import RunOutcome
from gerrit_watcher.app.reporter import GerritReviewChannel, OutcomeReporter, read_log_tail


def _outcome(log_path: Path, *, status: str = "failed", exit_code: int | None = 1) -> RunOutcome:
    return RunOutcome(
        run_id="gerrit-watcher-100-1-20261019T101500000000",
        run_name="gerrit-watcher-100-1",
        title="100,1 (5.11) - Fix crash",
        status=status,  # type: ignore[arg-type]
        exit_code=exit_code,
        log_path=log_path,
    )


def _write_log(path: Path, count: int) -> None:
    path.write_text("".join(f"line {n}\n" for n in range(1, count + 1)), encoding="utf-8")


def test_failure_report_quotes_last_lines_with_negative_score(
    tmp_path: Path,
    channel: FakeReviewChannel,
) -> None:
    log_path = tmp_path / "run.log"
    _write_log(log_path, 50)
    reporter = OutcomeReporter(channel)

    assert reporter.report(_outcome(log_path), 100, 1) is True

    [(commit, message, score)] = channel.calls
    assert commit == "100,1"
    assert score == -1
    assert "FAILED with exit code 1" in message
    assert "    line 21\n" in message
    assert message.endswith("    line 50")
    assert "line 20\n" not in message
    assert "Last 30 lines of the log:" in message


def test_success_report_has_no_score_and_no_excerpt(tmp_path: Path, channel: FakeReviewChannel) -> None:
    log_path = tmp_path / "run.log"
    _write_log(log_path, 5)
    reporter = OutcomeReporter(channel, public_url="http://watcher.example.com/")

    reporter.report(_outcome(log_path, status="passed", exit_code=0), "100", "1")

    [(commit, message, score)] = channel.calls
    assert commit == "100,1"
    assert score is None
    assert "PASSED" in message
    assert "line 1" not in message
    assert "Full log: http://watcher.example.com/logs/run.log" in message


def test_unreadable_log_still_sends_base_message(
    tmp_path: Path,
    channel: FakeReviewChannel,
    caplog: pytest.LogCaptureFixture,
) -> None:
    reporter = OutcomeReporter(channel)
    missing = tmp_path / "never-written.log"

    with caplog.at_level(logging.ERROR, logger="gerrit_watcher.app.reporter"):
        assert reporter.report(_outcome(missing), 100, 1) is True

    [(_, message, score)] = channel.calls
    assert message.startswith("gerrit-watcher: gerrit-watcher-100-1 FAILED")
    assert "Last" not in message
    assert score == -1
    assert "event=log_tail_failed" in caplog.text


def test_launch_failure_message_mentions_that_run_never_started(
    tmp_path: Path,
    channel: FakeReviewChannel,
) -> None:
    reporter = OutcomeReporter(channel)
    reporter.report(_outcome(tmp_path / "x.log", exit_code=None), 100, 1)
    assert "could not be started" in channel.calls[0][1]


def test_non_zero_review_command_is_logged_not_raised(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    channel = FakeReviewChannel(exit_code=255)
    reporter = OutcomeReporter(channel)

    with caplog.at_level(logging.ERROR, logger="gerrit_watcher.app.reporter"):
        assert reporter.report(_outcome(tmp_path / "x.log", status="passed", exit_code=0), 100, 1) is False

    assert len(channel.calls) == 1
    assert "event=send_failed" in caplog.text


def test_channel_exception_is_logged_not_raised(tmp_path: Path) -> None:
    class BrokenChannel:
        def post_comment(self, commit: str, message: str, score: int | None = None) -> int:
            raise subprocess.TimeoutExpired(cmd="ssh", timeout=60)

    reporter = OutcomeReporter(BrokenChannel())
    assert reporter.report(_outcome(tmp_path / "x.log"), 100, 1) is False


def test_read_log_tail_handles_short_files(tmp_path: Path) -> None:
    log_path = tmp_path / "run.log"
    _write_log(log_path, 3)
    assert read_log_tail(log_path, 30) == ["line 1", "line 2", "line 3"]


def test_gerrit_review_command_quotes_message_for_remote_shell() -> None:
    channel = GerritReviewChannel(destination="watcher@codereview.qt-project.org", port=29418)
    message = "gerrit-watcher: run FAILED\n\n    it's broken"

    args = channel.command("100,1", message, -1)

    assert args[:6] == ["ssh", "-p", "29418", "watcher@codereview.qt-project.org", "gerrit", "review"]
    assert args[6] == "--message"
    assert shlex.split(args[7]) == [message]
    assert args[8:] == ["--code-review", "-1", "100,1"]
    assert "--code-review" not in channel.command("100,1", "ok", None)
