"""Branch version parsing used to decide whether a change is worth testing."""

from __future__ import annotations

import re
from typing import NamedTuple

_VERSION_RE = re.compile(r"v?(\d+)\.(\d+)(?:\.(\d+))?")

# Branches of this major version older than the minimum minor are skipped.
LEGACY_MAJOR = 5
MIN_SUPPORTED_MINOR = 11


class Version(NamedTuple):
    major: int
    minor: int
    # None means the branch did not name a patch release, which differs from 0.
    patch: int | None = None


def parse_version(text: str) -> Version | None:
    """Extract `major.minor[.patch]` from a free-form branch name.

    Returns None for names without a version (for example `dev`); that is an
    expected outcome, not an error.
    """
    match = _VERSION_RE.search(text)
    if match is None:
        return None
    major, minor, patch = match.groups()
    return Version(
        major=int(major),
        minor=int(minor),
        patch=int(patch) if patch is not None else None,
    )


def is_eligible(branch: str) -> bool:
    version = parse_version(branch)
    if version is None:
        return True
    return not (version.major == LEGACY_MAJOR and version.minor < MIN_SUPPORTED_MINOR)
