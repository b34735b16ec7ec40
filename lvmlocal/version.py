"""Version information of the driver."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

# Set at build time; empty means the value is looked up at run time.
GIT_COMMIT = ""
VERSION = ""
# Pre-release marker such as "dev" or "rc1"; empty for a final release.
VERSION_META = ""

_VERSION_FILE = "/src/lvm-localpv/VERSION"
_BUILD_META_FILE = "/src/lvm-localpv/BUILDMETA"


def _read_from_gopath(relative: str, what: str) -> Optional[str]:
    path = Path(os.environ.get("GOPATH", "") + relative)
    try:
        return path.read_text().strip()
    except OSError as exc:
        log.error("failed to get %s: %s", what, exc)
        return None


def current() -> str:
    """Return the current version of the driver."""
    return get()


def get() -> str:
    """Return VERSION, or the contents of the VERSION file when it is unset."""
    if VERSION:
        return VERSION
    value = _read_from_gopath(_VERSION_FILE, "version")
    return "" if value is None else value


def get_build_meta() -> str:
    """Return the build meta prefixed with '-', or '' when it cannot be read."""
    if VERSION_META:
        return "-" + VERSION_META
    value = _read_from_gopath(_BUILD_META_FILE, "build version")
    return "" if value is None else "-" + value


def get_git_commit() -> str:
    """Return GIT_COMMIT, or ask git for the HEAD commit when it is unset."""
    if GIT_COMMIT:
        return GIT_COMMIT
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--verify", "HEAD"],
            capture_output=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        log.error("failed to get git commit: %s", exc)
        return ""
    return result.stdout.decode(errors="replace").strip()


def get_version_details() -> str:
    """Return 'lvm-<version>-<short commit>'."""
    return "lvm-" + verbose()


def verbose() -> str:
    """Return '<version>-<short commit>'."""
    return "-".join([get(), get_git_commit()[:7]])