"""Pydantic models and plain value types shared across the watcher.

Beginner terms used in this file:
- Alias: the JSON key used on disk (camelCase) for a snake_case Python field.
- Frozen model: an instance that cannot be mutated; changes go through
  `model_copy(update=...)`, which returns a new instance.
- Literal: restricts a field to a fixed set of allowed string values.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Run lifecycle states. `running` is the only non-terminal one.
RunStatus = Literal["running", "passed", "failed", "aborted"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"passed", "failed", "aborted"})


class RunRecord(BaseModel):
    """One test execution, past or in flight, as stored in the ledger file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    run_id: str = Field(alias="runId", min_length=1)
    # Field names on disk keep the historical qtwayland/qt5 naming.
    revision_under_test: str = Field(alias="qtWaylandRev")
    baseline_revision: str = Field(alias="qt5Rev")
    container_name: str = Field(alias="containerName")
    title: str
    url: str | None = None
    status: RunStatus = "running"
    log_path: str = Field(alias="logPath")
    # Absent on entries written before start times were recorded.
    started_at: datetime | None = Field(default=None, alias="startedAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")
    exit_code: int | None = Field(default=None, alias="exitCode")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class RunOutcome:
    """Final result of a run, handed to completion callbacks."""

    run_id: str
    run_name: str
    title: str
    status: RunStatus
    exit_code: int | None
    log_path: Path

    @property
    def passed(self) -> bool:
        return self.status == "passed"


@dataclass(frozen=True)
class RunRequest:
    """Transient description of a run that should be started."""

    revision_under_test: str
    baseline_revision: str
    run_name: str
    title: str
    url: str | None = None
    on_complete: Callable[[RunOutcome], None] | None = None


class GerritAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    email: str | None = None
    username: str | None = None


class GerritChange(BaseModel):
    """The `change` object of a Gerrit stream event."""

    model_config = ConfigDict(extra="ignore")

    project: str
    branch: str
    subject: str = ""
    url: str | None = None
    # Gerrit versions disagree on whether this is a number or a string.
    number: int
    owner: GerritAccount | None = None


class GerritPatchSet(BaseModel):
    model_config = ConfigDict(extra="ignore")

    number: int
    ref: str


class PatchsetCreatedEvent(BaseModel):
    """`patchset-created` event as delivered by `gerrit stream-events`."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Literal["patchset-created"] = "patchset-created"
    change: GerritChange
    patch_set: GerritPatchSet = Field(alias="patchSet")

    @property
    def commit_id(self) -> str:
        return f"{self.change.number},{self.patch_set.number}"
