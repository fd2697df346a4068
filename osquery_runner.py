#!/usr/bin/env python3
"""
osquery runner - locates osqueryi and runs one query per child process

Invocation contract
───────────────────
• <binary> --json "<query>"   → exit 0 and a JSON array of row objects on stdout
• any other exit status        → ExecutionFailed (stderr kept for diagnostics)
• binary missing / not exec    → BinaryNotFound (raised at spawn time)
• stdout not a JSON array      → MalformedOutput

The runner reports every failure; deciding that a failed table means "no rows"
is the collector's job.
"""

import json
import logging
import os
import platform
import subprocess
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

WINDOWS = "windows"
LINUX = "linux"
MACOS = "macos"

# Explicit binary override, checked ahead of the install locations
OSQUERYI_ENV = "HOST_SNAPSHOT_OSQUERYI"

_DEFAULT_BINARY = "osqueryi"

_CANDIDATE_PATHS: Dict[str, Tuple[Tuple[str, ...], str]] = {
    WINDOWS: (
        (
            r"C:\Program Files\osquery\osqueryi.exe",
            r"C:\Program Files (x86)\osquery\osqueryi.exe",
        ),
        "osqueryi.exe",
    ),
    LINUX: (
        (
            "/usr/bin/osqueryi",
            "/usr/local/bin/osqueryi",
            "/opt/osquery/bin/osqueryi",
        ),
        _DEFAULT_BINARY,
    ),
    MACOS: (
        (
            "/usr/local/bin/osqueryi",
            "/opt/osquery/bin/osqueryi",
            "/usr/bin/osqueryi",
        ),
        _DEFAULT_BINARY,
    ),
}

_EXCERPT_LEN = 200


# ── Errors ─────────────────────────────────────────────────────────────────────

class QueryError(Exception):
    """Base class for a failed osquery invocation."""


class BinaryNotFound(QueryError):
    def __init__(self, attempted_path: str, reason: str = ""):
        self.attempted_path = attempted_path
        self.reason = reason
        msg = f"osquery binary not found or not executable: {attempted_path}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class ExecutionFailed(QueryError):
    def __init__(self, stderr: str, returncode: Optional[int] = None):
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"osquery exited with status {returncode}: {stderr.strip()}")


class MalformedOutput(QueryError):
    def __init__(self, raw_excerpt: str, reason: str = ""):
        self.raw_excerpt = raw_excerpt
        self.reason = reason
        super().__init__(f"osquery output is not a JSON array ({reason}): {raw_excerpt!r}")


# ── Binary locator ─────────────────────────────────────────────────────────────

def current_platform() -> str:
    """Map platform.system() onto a platform tag."""
    system = platform.system()
    return {"Windows": WINDOWS, "Linux": LINUX, "Darwin": MACOS}.get(system, system.lower())


def candidate_paths(platform_tag: str) -> Tuple[str, ...]:
    """Well-known install locations for a platform, in search order."""
    return _CANDIDATE_PATHS.get(platform_tag, ((), _DEFAULT_BINARY))[0]


def locate_osquery_binary(
    platform_tag: str,
    exists: Callable[[str], bool] = os.path.exists,
) -> str:
    """
    Return the osqueryi path for a platform.

    Never fails: when no candidate exists the bare command name is returned and
    PATH resolution happens when the process is spawned.
    """
    override = os.environ.get(OSQUERYI_ENV, "").strip()
    if override:
        return override

    for path in candidate_paths(platform_tag):
        if exists(path):
            return path
    return _CANDIDATE_PATHS.get(platform_tag, ((), _DEFAULT_BINARY))[1]


# ── Query runner ───────────────────────────────────────────────────────────────

def _excerpt(text: str) -> str:
    text = text.strip()
    if len(text) <= _EXCERPT_LEN:
        return text
    return text[:_EXCERPT_LEN] + "…"


class OsqueryRunner:
    """Runs queries against one resolved osqueryi binary."""

    def __init__(self, binary: str):
        self.binary = binary

    @classmethod
    def for_platform(cls, platform_tag: str) -> "OsqueryRunner":
        return cls(locate_osquery_binary(platform_tag))

    def run(self, query: str) -> List:
        """Run a query and return the parsed JSON array (rows not yet mapped)."""
        logger.debug("Executing %r using binary %r", query, self.binary)

        try:
            result = subprocess.run(
                [self.binary, "--json", query],
                capture_output=True,
            )
        except OSError as e:
            logger.warning("Could not start osquery binary %r: %s", self.binary, e)
            raise BinaryNotFound(self.binary, e.strerror or str(e)) from e

        stdout = result.stdout.decode("utf-8", errors="replace")
        stderr = result.stderr.decode("utf-8", errors="replace")

        if result.returncode != 0:
            logger.warning(
                "Query %r failed with status %s: %s",
                query, result.returncode, stderr.strip(),
            )
            raise ExecutionFailed(stderr, result.returncode)

        if not stdout.strip():
            logger.warning("Query %r returned no output", query)
            raise MalformedOutput("", "empty output")

        try:
            values = json.loads(stdout)
        except (json.JSONDecodeError, RecursionError) as e:
            logger.warning("Query %r returned invalid JSON: %s", query, e)
            raise MalformedOutput(_excerpt(stdout), str(e)) from e

        if not isinstance(values, list):
            logger.warning("Query %r returned %s instead of an array", query, type(values).__name__)
            raise MalformedOutput(_excerpt(stdout), f"top-level {type(values).__name__}")

        logger.debug("Query %r returned %d row(s)", query, len(values))
        return values

