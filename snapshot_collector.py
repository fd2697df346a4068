#!/usr/bin/env python3
"""
Snapshot Collector - runs one osquery collection cycle and caches the result

Collection plan
───────────────
• Every platform  → os_version, system_info, processes, process_open_sockets,
                    listening_ports, users, interface_addresses
• windows         → services, scheduled_tasks, programs
• linux           → systemd_units, crontab, rpm/deb/portage/pkg packages
• macos           → launchd, crontab, homebrew/macports packages

Tables run one at a time in plan order, each in its own osqueryi process.
A failed query contributes zero rows; the cycle always yields a Snapshot.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Type

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from models import (
    InterfaceAddress,
    ListeningPort,
    NetworkConnection,
    OsVersion,
    PackageInfo,
    ProcessInfo,
    Row,
    ScheduledTask,
    ServiceInfo,
    Snapshot,
    SystemDetails,
    UserInfo,
    as_int,
    map_rows,
)
from osquery_runner import LINUX, MACOS, WINDOWS, OsqueryRunner, QueryError, current_platform

logger = logging.getLogger(__name__)

# Progress goes to stderr so stdout stays clean for JSON output
console = Console(stderr=True)

CACHE_FILE_NAME = "snapshot.json"
DEFAULT_INTERVAL = 300


# ── Settings ───────────────────────────────────────────────────────────────────

def _cache_dir() -> Path:
    """Return the cache directory ($HOST_SNAPSHOT_CACHE_DIR, snap user dir, or ~/.cache/host-snapshot)."""
    override = os.environ.get("HOST_SNAPSHOT_CACHE_DIR")
    if override:
        return Path(override)
    snap_common = os.environ.get("SNAP_USER_COMMON")
    if snap_common:
        return Path(snap_common) / "cache"
    return Path.home() / ".cache" / "host-snapshot"


def collection_interval(default: int = DEFAULT_INTERVAL) -> int:
    """Collection interval in seconds; AGENT_INTERVAL wins over the given default."""
    raw = os.environ.get("AGENT_INTERVAL")
    if raw is None:
        return default
    try:
        interval = int(raw)
    except ValueError:
        interval = 0
    if interval <= 0:
        logger.warning("Invalid AGENT_INTERVAL value %r, using %d seconds", raw, default)
        return default
    logger.info("Using interval from AGENT_INTERVAL environment variable: %d seconds", interval)
    return interval


# ── Collection plan ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TableQuery:
    """One snapshot field and the osquery queries that feed it, in order."""

    field: str
    row_type: Type[Row]
    queries: Tuple[str, ...]
    singleton: bool = False


def _select(*tables: str) -> Tuple[str, ...]:
    return tuple(f"SELECT * FROM {t};" for t in tables)


_SERVICE_TABLES = {
    WINDOWS: ("services",),
    LINUX: ("systemd_units",),
    MACOS: ("launchd",),
}

_TASK_TABLES = {
    WINDOWS: ("scheduled_tasks",),
    LINUX: ("crontab",),
    MACOS: ("crontab",),
}

_PACKAGE_TABLES = {
    WINDOWS: ("programs",),
    LINUX: ("rpm_packages", "deb_packages", "portage_packages", "pkg_packages"),
    MACOS: ("homebrew_packages", "macports_packages"),
}


def collection_plan(platform_tag: str) -> List[TableQuery]:
    """The fixed, ordered list of table queries for a platform."""
    plan = [
        TableQuery("os_version", OsVersion, _select("os_version"), singleton=True),
        TableQuery("system_info", SystemDetails, _select("system_info"), singleton=True),
        TableQuery("processes", ProcessInfo, _select("processes")),
        TableQuery("network_connections", NetworkConnection, _select("process_open_sockets")),
        TableQuery("listening_ports", ListeningPort, _select("listening_ports")),
        TableQuery("users", UserInfo, _select("users")),
    ]
    if platform_tag in _SERVICE_TABLES:
        plan += [
            TableQuery("services", ServiceInfo, _select(*_SERVICE_TABLES[platform_tag])),
            TableQuery("scheduled_tasks", ScheduledTask, _select(*_TASK_TABLES[platform_tag])),
            TableQuery("installed_packages", PackageInfo, _select(*_PACKAGE_TABLES[platform_tag])),
        ]
    plan.append(TableQuery("interface_addresses", InterfaceAddress, _select("interface_addresses")))
    return plan


# ── Assembler ──────────────────────────────────────────────────────────────────

def collect(
    platform_tag: str,
    runner=None,
    on_table: Optional[Callable[[str], None]] = None,
) -> Snapshot:
    """
    Run one collection cycle for a platform and assemble the snapshot.

    `runner` is anything with a run(query) -> list method; by default an
    OsqueryRunner is built once for the cycle so the binary is located once.
    Query failures are logged and treated as zero rows.
    """
    if runner is None:
        runner = OsqueryRunner.for_platform(platform_tag)

    values: Dict[str, object] = {}
    for entry in collection_plan(platform_tag):
        if on_table is not None:
            on_table(entry.field)

        rows: List[Row] = []
        for query in entry.queries:
            try:
                raw = runner.run(query)
            except QueryError as e:
                logger.warning("No %s rows from %r: %s", entry.field, query, e)
                continue
            rows.extend(map_rows(entry.row_type, raw, source=query))

        if entry.singleton:
            values[entry.field] = rows[0] if rows else None
        else:
            values[entry.field] = tuple(rows)

    return Snapshot(
        platform=platform_tag,
        collected_at=datetime.now().isoformat(),
        **values,
    )


def log_summary(snapshot: Snapshot, cycle: Optional[int] = None) -> None:
    """Log row counts for a cycle and warn about tables that came back empty."""
    counts = snapshot.counts()
    label = f"Collection #{cycle}" if cycle is not None else "Collection"
    logger.info(
        "%s summary: %d processes, %d connections, %d ports, %d users, "
        "%d services, %d tasks, %d packages, %d addresses",
        label,
        counts["processes"],
        counts["network_connections"],
        counts["listening_ports"],
        counts["users"],
        counts["services"],
        counts["scheduled_tasks"],
        counts["installed_packages"],
        counts["interface_addresses"],
    )

    if snapshot.os_version is not None:
        logger.debug(
            "OS: %s %s (%s)",
            snapshot.os_version.name or "Unknown",
            snapshot.os_version.version or "Unknown",
            snapshot.os_version.arch or "Unknown",
        )
    if snapshot.system_info is not None and snapshot.system_info.hostname:
        logger.debug("Hostname: %s", snapshot.system_info.hostname)

    if not counts["processes"]:
        logger.warning("No processes collected (osquery may have issues)")
    if not counts["network_connections"] and not counts["listening_ports"]:
        logger.warning("No network data collected")
    if not counts["users"]:
        logger.warning("No users collected")
    if not counts["services"]:
        logger.warning("No services collected")


# ── Cached collector ───────────────────────────────────────────────────────────

def _age_seconds(snapshot: Snapshot) -> Optional[float]:
    try:
        collected = datetime.fromisoformat(snapshot.collected_at)
    except ValueError:
        return None
    # Hand-edited caches may carry an offset; compare like with like
    now = datetime.now(timezone.utc) if collected.tzinfo is not None else datetime.now()
    return (now - collected).total_seconds()


def _gb(value) -> str:
    n = as_int(value)
    return f"{n / 1_000_000_000:.2f} GB" if n else ""


class SnapshotCollector:
    """Collects host snapshots and keeps the latest one cached on disk"""

    def __init__(
        self,
        cache_dir: Path = None,
        platform_tag: str = None,
        runner=None,
        interval: int = None,
    ):
        self.cache_dir = cache_dir or _cache_dir()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.cache_file = self.cache_dir / CACHE_FILE_NAME
        self.platform = platform_tag or current_platform()
        self.runner = runner
        self.interval = interval if interval is not None else collection_interval()
        self.snapshot: Optional[Snapshot] = None
        self.cycles = 0
        self._lock = threading.Lock()

    def load_or_collect(
        self,
        force_refresh: bool = False,
        max_age: float = None,
        show_progress: bool = False,
    ) -> Snapshot:
        """Return the cached snapshot while it is fresh, otherwise collect a new one"""
        if max_age is None:
            max_age = self.interval
        with self._lock:
            if not force_refresh:
                if self._is_fresh(self.snapshot, max_age):
                    return self.snapshot
                cached = self._load_cache()
                if self._is_fresh(cached, max_age):
                    logger.debug("Using cached snapshot from %s", cached.collected_at)
                    self.snapshot = cached
                    return cached
            return self._collect(show_progress=show_progress)

    def collect_snapshot(self, show_progress: bool = False) -> Snapshot:
        """Run a collection cycle now, regardless of the cache"""
        with self._lock:
            return self._collect(show_progress=show_progress)

    def _is_fresh(self, snapshot: Optional[Snapshot], max_age: float) -> bool:
        if snapshot is None or snapshot.platform != self.platform:
            return False
        age = _age_seconds(snapshot)
        return age is not None and 0 <= age < max_age

    def _collect(self, show_progress: bool) -> Snapshot:
        self.cycles += 1
        logger.info("=== Collection Cycle #%d (%s) ===", self.cycles, self.platform)
        started = datetime.now()

        if show_progress:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Querying osquery...", total=None)
                snapshot = collect(
                    self.platform,
                    self.runner,
                    on_table=lambda name: progress.update(task, description=f"Querying {name}..."),
                )
        else:
            snapshot = collect(self.platform, self.runner)

        elapsed = (datetime.now() - started).total_seconds()
        logger.info("Cycle #%d completed in %.2fs", self.cycles, elapsed)
        log_summary(snapshot, self.cycles)

        self.snapshot = snapshot
        self._write_cache(snapshot)
        return snapshot

    def _load_cache(self) -> Optional[Snapshot]:
        if not self.cache_file.exists():
            return None
        try:
            with open(self.cache_file, "r", encoding="utf-8") as f:
                return Snapshot.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable snapshot cache %s: %s", self.cache_file, e)
            return None

    def _write_cache(self, snapshot: Snapshot) -> None:
        try:
            with open(self.cache_file, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f, indent=2)
        except OSError as e:
            logger.warning("Failed to write snapshot cache %s: %s", self.cache_file, e)

    def get_summary_fields(self) -> list:
        """Return the snapshot as a list of {label, value} dicts for display."""
        snapshot = self.snapshot or self.load_or_collect()

        fields = []

        def add(label: str, value) -> None:
            if value:
                fields.append({"label": label, "value": str(value)})

        os_version = snapshot.os_version or OsVersion()
        details = snapshot.system_info or SystemDetails()

        add("OS", " ".join(str(v) for v in (os_version.name, os_version.version, os_version.arch) if v))
        add("Codename", os_version.codename)
        add("Build", os_version.build)
        add("Host", details.hostname or details.computer_name)
        add("Model", " ".join(str(v) for v in (details.hardware_vendor, details.hardware_model) if v))
        add("CPU", details.cpu_brand)

        physical = as_int(details.cpu_physical_cores)
        logical = as_int(details.cpu_logical_cores)
        if physical or logical:
            add("Cores", f"{physical or '?'} physical / {logical or '?'} logical")
        add("Memory", _gb(details.physical_memory))

        labels = {
            "processes": "Processes",
            "network_connections": "Connections",
            "listening_ports": "Listening ports",
            "users": "Users",
            "services": "Services",
            "scheduled_tasks": "Scheduled tasks",
            "installed_packages": "Packages",
            "interface_addresses": "Addresses",
        }
        for name, count in snapshot.counts().items():
            fields.append({"label": labels[name], "value": str(count)})

        add("Collected", snapshot.collected_at)
        return fields
