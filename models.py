#!/usr/bin/env python3
"""
Row schemas for the osquery tables in a host snapshot

osquery's column typing drifts between platforms and releases: the same
column (pid, cpu_physical_cores, physical_memory, ...) arrives as a JSON
string on one host and a JSON number on another.  Every column is therefore
stored as a LenientValue (None, str or int) and read back through as_int()
when a number is needed.  Extra columns are ignored; a row is only rejected
when a value has a shape no column can hold (bool, fraction, array, object).
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Union

logger = logging.getLogger(__name__)

LenientValue = Union[None, str, int]

R = TypeVar("R", bound="Row")


class RowMappingFailed(ValueError):
    """A JSON value could not be converted into a row; the row is dropped."""

    def __init__(self, row_type: str, reason: str):
        self.row_type = row_type
        self.reason = reason
        super().__init__(f"{row_type}: {reason}")


def decode_value(value: Any) -> LenientValue:
    """Decode one JSON scalar into None, str or int.  Raises TypeError otherwise."""
    if value is None or isinstance(value, str):
        return value
    # bool is an int subclass; osquery never emits JSON booleans for a column
    if isinstance(value, bool):
        raise TypeError("boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise TypeError(type(value).__name__)


def as_int(value: LenientValue) -> Optional[int]:
    """Read a column as an integer regardless of its wire representation."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(value.strip())
    except ValueError:
        return None


def _column(name: str) -> Any:
    """Declare a field whose osquery column name differs from the attribute."""
    return field(default=None, metadata={"column": name})


@dataclass(frozen=True)
class Row:
    """Base for one row of an osquery table."""

    @classmethod
    def columns(cls) -> List[Tuple[str, str]]:
        """(attribute, column) pairs in declaration order."""
        return [(f.name, f.metadata.get("column", f.name)) for f in fields(cls)]

    @classmethod
    def from_json(cls: Type[R], value: Any) -> R:
        if not isinstance(value, dict):
            raise RowMappingFailed(cls.__name__, f"expected an object, got {type(value).__name__}")
        kwargs: Dict[str, LenientValue] = {}
        for attr, col in cls.columns():
            try:
                kwargs[attr] = decode_value(value.get(col))
            except TypeError as e:
                raise RowMappingFailed(cls.__name__, f"column {col!r} holds an unsupported {e}") from e
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, LenientValue]:
        return {col: getattr(self, attr) for attr, col in self.columns()}


@dataclass(frozen=True)
class OsVersion(Row):
    name: LenientValue = None
    version: LenientValue = None
    major: LenientValue = None
    minor: LenientValue = None
    patch: LenientValue = None
    build: LenientValue = None
    platform: LenientValue = None
    platform_like: LenientValue = None
    codename: LenientValue = None
    arch: LenientValue = None


@dataclass(frozen=True)
class SystemDetails(Row):
    hostname: LenientValue = None
    uuid: LenientValue = None
    cpu_type: LenientValue = None
    cpu_subtype: LenientValue = None
    cpu_brand: LenientValue = None
    cpu_physical_cores: LenientValue = None
    cpu_logical_cores: LenientValue = None
    cpu_microcode: LenientValue = None
    physical_memory: LenientValue = None
    hardware_vendor: LenientValue = None
    hardware_model: LenientValue = None
    hardware_version: LenientValue = None
    hardware_serial: LenientValue = None
    computer_name: LenientValue = None
    local_hostname: LenientValue = None


@dataclass(frozen=True)
class ProcessInfo(Row):
    pid: LenientValue = None
    name: LenientValue = None
    path: LenientValue = None
    cmdline: LenientValue = None
    state: LenientValue = None
    cwd: LenientValue = None
    root: LenientValue = None
    uid: LenientValue = None
    gid: LenientValue = None
    euid: LenientValue = None
    egid: LenientValue = None
    suid: LenientValue = None
    sgid: LenientValue = None
    on_disk: LenientValue = None
    wired_size: LenientValue = None
    resident_size: LenientValue = None
    total_size: LenientValue = None
    user_time: LenientValue = None
    system_time: LenientValue = None
    disk_bytes_read: LenientValue = None
    disk_bytes_written: LenientValue = None
    start_time: LenientValue = None
    parent: LenientValue = None
    pgroup: LenientValue = None
    threads: LenientValue = None
    nice: LenientValue = None


@dataclass(frozen=True)
class NetworkConnection(Row):
    pid: LenientValue = None
    fd: LenientValue = None
    socket: LenientValue = None
    family: LenientValue = None
    protocol: LenientValue = None
    local_address: LenientValue = None
    local_port: LenientValue = None
    remote_address: LenientValue = None
    remote_port: LenientValue = None
    state: LenientValue = None
    path: LenientValue = None


@dataclass(frozen=True)
class ListeningPort(Row):
    pid: LenientValue = None
    port: LenientValue = None
    protocol: LenientValue = None
    family: LenientValue = None
    address: LenientValue = None
    fd: LenientValue = None
    socket: LenientValue = None
    path: LenientValue = None


@dataclass(frozen=True)
class UserInfo(Row):
    uid: LenientValue = None
    gid: LenientValue = None
    uid_signed: LenientValue = None
    gid_signed: LenientValue = None
    username: LenientValue = None
    description: LenientValue = None
    directory: LenientValue = None
    shell: LenientValue = None
    uuid: LenientValue = None
    type_: LenientValue = _column("type")
    is_hidden: LenientValue = None


@dataclass(frozen=True)
class ServiceInfo(Row):
    name: LenientValue = None
    service_type: LenientValue = None
    display_name: LenientValue = None
    status: LenientValue = None
    pid: LenientValue = None
    start_type: LenientValue = None
    win32_exit_code: LenientValue = None
    service_exit_code: LenientValue = None
    path: LenientValue = None
    module_path: LenientValue = None
    description: LenientValue = None
    user_account: LenientValue = None


@dataclass(frozen=True)
class ScheduledTask(Row):
    name: LenientValue = None
    action: LenientValue = None
    path: LenientValue = None
    enabled: LenientValue = None
    state: LenientValue = None
    hidden: LenientValue = None
    last_run_time: LenientValue = None
    next_run_time: LenientValue = None
    last_run_message: LenientValue = None
    last_run_code: LenientValue = None


@dataclass(frozen=True)
class PackageInfo(Row):
    name: LenientValue = None
    version: LenientValue = None
    release: LenientValue = None
    source: LenientValue = None
    size: LenientValue = None
    sha1: LenientValue = None
    arch: LenientValue = None
    revision: LenientValue = None
    status: LenientValue = None
    maintainer: LenientValue = None
    section: LenientValue = None
    priority: LenientValue = None


@dataclass(frozen=True)
class InterfaceAddress(Row):
    interface: LenientValue = None
    address: LenientValue = None
    mask: LenientValue = None
    broadcast: LenientValue = None
    point_to_point: LenientValue = None
    type_: LenientValue = _column("type")
    friendly_name: LenientValue = None


# ── Record mapper ──────────────────────────────────────────────────────────────

def map_rows(row_type: Type[R], values: Iterable[Any], source: str = "") -> List[R]:
    """
    Convert JSON values into rows of one type, in order.

    A value that does not fit the row shape is logged and dropped; the rest of
    the table is unaffected.
    """
    rows: List[R] = []
    for index, value in enumerate(values):
        try:
            rows.append(row_type.from_json(value))
        except RowMappingFailed as e:
            where = f" from {source!r}" if source else ""
            logger.warning("Dropping row %d%s: %s (value: %.200r)", index, where, e, value)
    return rows


# ── Snapshot ───────────────────────────────────────────────────────────────────

SINGLETON_TABLES: Dict[str, Type[Row]] = {
    "os_version": OsVersion,
    "system_info": SystemDetails,
}

SEQUENCE_TABLES: Dict[str, Type[Row]] = {
    "processes": ProcessInfo,
    "network_connections": NetworkConnection,
    "listening_ports": ListeningPort,
    "users": UserInfo,
    "services": ServiceInfo,
    "scheduled_tasks": ScheduledTask,
    "installed_packages": PackageInfo,
    "interface_addresses": InterfaceAddress,
}


@dataclass(frozen=True)
class Snapshot:
    """
    One collection cycle's view of the host.

    A missing singleton or an empty sequence means the table was unavailable
    (failed query, missing binary, or genuinely empty); it is never an error.
    """

    platform: str = ""
    collected_at: str = ""
    os_version: Optional[OsVersion] = None
    system_info: Optional[SystemDetails] = None
    processes: Tuple[ProcessInfo, ...] = ()
    network_connections: Tuple[NetworkConnection, ...] = ()
    listening_ports: Tuple[ListeningPort, ...] = ()
    users: Tuple[UserInfo, ...] = ()
    services: Tuple[ServiceInfo, ...] = ()
    scheduled_tasks: Tuple[ScheduledTask, ...] = ()
    installed_packages: Tuple[PackageInfo, ...] = ()
    interface_addresses: Tuple[InterfaceAddress, ...] = ()

    def counts(self) -> Dict[str, int]:
        return {name: len(getattr(self, name)) for name in SEQUENCE_TABLES}

    def is_empty(self) -> bool:
        return (
            self.os_version is None
            and self.system_info is None
            and not any(self.counts().values())
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "platform": self.platform,
            "collected_at": self.collected_at,
        }
        for name in SINGLETON_TABLES:
            row = getattr(self, name)
            data[name] = row.to_dict() if row is not None else None
        for name in SEQUENCE_TABLES:
            data[name] = [row.to_dict() for row in getattr(self, name)]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        """Rebuild a snapshot from its JSON document, as leniently as collection does."""
        if not isinstance(data, dict):
            raise ValueError(f"snapshot document must be an object, got {type(data).__name__}")

        kwargs: Dict[str, Any] = {
            "platform": str(data.get("platform") or ""),
            "collected_at": str(data.get("collected_at") or ""),
        }
        for name, row_type in SINGLETON_TABLES.items():
            value = data.get(name)
            rows = map_rows(row_type, [value], source=name) if value is not None else []
            kwargs[name] = rows[0] if rows else None
        for name, row_type in SEQUENCE_TABLES.items():
            values = data.get(name)
            if not isinstance(values, list):
                values = []
            kwargs[name] = tuple(map_rows(row_type, values, source=name))
        return cls(**kwargs)
