"""Sorted-set, scan, cluster, geo, COMMAND and SLOWLOG replies."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from redcluster.command import (
    Command,
    _as_float,
    _as_int,
    _as_int_text,
    _as_list,
    _as_str,
    _pairs,
)

__all__ = [
    "Z",
    "ZWithKey",
    "ZSliceCmd",
    "ZWithKeyCmd",
    "ScanCmd",
    "ClusterNode",
    "ClusterSlot",
    "ClusterSlotsCmd",
    "GeoLocation",
    "GeoRadiusQuery",
    "GeoLocationCmd",
    "GeoPos",
    "GeoPosCmd",
    "CommandInfo",
    "CommandsInfoCmd",
    "CommandsInfoCache",
    "SlowLog",
    "SlowLogCmd",
    "geo_location_args",
    "parse_command_info",
    "join_host_port",
]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _int8(value: int) -> int:
    return ((value + 128) % 256) - 128


def join_host_port(host: str, port: Any) -> str:
    """Combine host and port, bracketing hosts that contain a colon."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


# ---------------------------------------------------------------------------
# Sorted sets


@dataclass
class Z:
    score: float = 0.0
    member: Any = None


@dataclass
class ZWithKey(Z):
    key: str = ""


class ZSliceCmd(Command):
    """Member/score pairs of a sorted set."""

    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[Z]:
        items = _as_list(reply)
        if len(items) % 2:
            items = items[:-1]
        return [Z(score=_as_float(score), member=_as_str(member)) for member, score in _pairs(items)]


class ZWithKeyCmd(Command):
    """A popped member together with the key it came from."""

    def _parse(self, reply: Any) -> ZWithKey:
        items = _as_list(reply)
        if len(items) != 3:
            raise ValueError(f"got {len(items)} elements, expected 3")
        return ZWithKey(
            key=_as_str(items[0]),
            member=_as_str(items[1]),
            score=_as_float(items[2]),
        )


# ---------------------------------------------------------------------------
# Scanning


class ScanCmd(Command):
    """One page of a SCAN-family reply and the cursor for the next page."""

    _zero = staticmethod(list)

    def __init__(self, *args: Any, process: Callable[..., Any] | None = None) -> None:
        super().__init__(*args)
        self.process = process
        self.cursor = 0

    def _parse(self, reply: Any) -> list[str]:
        items = _as_list(reply)
        if len(items) != 2:
            raise ValueError(f"redis: got {len(items)} elements in scan reply, expected 2")
        cursor = _as_int_text(items[0])
        if cursor < 0:
            raise ValueError(f"redis: invalid scan cursor: {cursor}")
        keys = [_as_str(item) for item in _as_list(items[1])]
        self.cursor = cursor
        return keys

    def result(self) -> tuple[list[str], int]:
        """Return ``(keys, cursor)``, or raise the stored error."""
        return super().result(), self.cursor


# ---------------------------------------------------------------------------
# Cluster slots


@dataclass
class ClusterNode:
    id: str = ""
    addr: str = ""


@dataclass
class ClusterSlot:
    start: int = 0
    end: int = 0
    nodes: list[ClusterNode] = field(default_factory=list)


class ClusterSlotsCmd(Command):
    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[ClusterSlot]:
        slots = []
        for entry in _as_list(reply):
            items = _as_list(entry)
            if len(items) < 2:
                raise ValueError(
                    f"redis: got {len(items)} elements in cluster info, expected at least 2"
                )
            start = _as_int(items[0])
            end = _as_int(items[1])
            nodes = []
            for raw_node in items[2:]:
                parts = _as_list(raw_node)
                if len(parts) not in (2, 3):
                    raise ValueError(
                        f"got {len(parts)} elements in cluster info address, expected 2 or 3"
                    )
                addr = join_host_port(_as_str(parts[0]), _as_str(parts[1]))
                node_id = _as_str(parts[2]) if len(parts) == 3 else ""
                nodes.append(ClusterNode(id=node_id, addr=addr))
            slots.append(ClusterSlot(start=start, end=end, nodes=nodes))
        return slots


# ---------------------------------------------------------------------------
# Geo


@dataclass
class GeoLocation:
    name: str = ""
    longitude: float = 0.0
    latitude: float = 0.0
    dist: float = 0.0
    geohash: int = 0


@dataclass
class GeoRadiusQuery:
    radius: float = 0.0
    unit: str = ""
    with_coord: bool = False
    with_dist: bool = False
    with_geohash: bool = False
    count: int = 0
    sort: str = ""
    store: str = ""
    store_dist: str = ""


def geo_location_args(query: GeoRadiusQuery, *args: Any) -> list[Any]:
    """Append the arguments that ``query`` describes to ``args``."""
    result = list(args)
    result.append(query.radius)
    result.append(query.unit or "km")
    if query.with_coord:
        result.append("withcoord")
    if query.with_dist:
        result.append("withdist")
    if query.with_geohash:
        result.append("withhash")
    if query.count > 0:
        result.extend(["count", query.count])
    if query.sort:
        result.append(query.sort)
    if query.store:
        result.extend(["store", query.store])
    if query.store_dist:
        result.extend(["storedist", query.store_dist])
    return result


class GeoLocationCmd(Command):
    """GEORADIUS-style reply, shaped by the query's WITH* options."""

    _zero = staticmethod(list)

    def __init__(self, query: GeoRadiusQuery, *args: Any) -> None:
        super().__init__(*geo_location_args(query, *args))
        self.query = query

    def _parse(self, reply: Any) -> list[GeoLocation]:
        return [self._location(entry) for entry in _as_list(reply)]

    def _location(self, entry: Any) -> GeoLocation:
        if isinstance(entry, (str, bytes)):
            return GeoLocation(name=_as_str(entry))
        if not isinstance(entry, (list, tuple)):
            entry = _as_list(entry)
        items = iter(entry)
        q = self.query
        try:
            loc = GeoLocation(name=_as_str(next(items)))
            if q.with_dist:
                loc.dist = _as_float(next(items))
            if q.with_geohash:
                loc.geohash = _as_int(next(items))
            if q.with_coord:
                coords = _as_list(next(items))
                if len(coords) != 2:
                    raise ValueError(f"got {len(coords)} coordinates, expected 2")
                loc.longitude = _as_float(coords[0])
                loc.latitude = _as_float(coords[1])
        except StopIteration:
            raise ValueError("redis: geo location reply is too short") from None
        return loc


@dataclass
class GeoPos:
    longitude: float = 0.0
    latitude: float = 0.0


class GeoPosCmd(Command):
    """GEOPOS reply; members without a position are None."""

    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[GeoPos | None]:
        positions: list[GeoPos | None] = []
        for entry in _as_list(reply):
            if entry is None:
                positions.append(None)
                continue
            coords = _as_list(entry)
            if len(coords) < 2:
                raise ValueError(f"got {len(coords)} coordinates, expected 2")
            positions.append(GeoPos(longitude=_as_float(coords[0]), latitude=_as_float(coords[1])))
        return positions


# ---------------------------------------------------------------------------
# COMMAND


@dataclass
class CommandInfo:
    name: str = ""
    arity: int = 0
    flags: list[str] = field(default_factory=list)
    acl_flags: list[str] = field(default_factory=list)
    first_key_pos: int = 0
    last_key_pos: int = 0
    step_count: int = 0
    read_only: bool = False


def _string_list(reply: Any) -> list[str]:
    return ["" if item is None else _as_str(item) for item in _as_list(reply)]


def parse_command_info(reply: Any) -> CommandInfo:
    """Decode one entry of the COMMAND reply."""
    items = _as_list(reply)
    if len(items) not in (6, 7):
        raise ValueError(f"redis: got {len(items)} elements in COMMAND reply, wanted 7")
    info = CommandInfo(
        name=_as_str(items[0]),
        arity=_int8(_as_int(items[1])),
        flags=_string_list(items[2]),
        first_key_pos=_int8(_as_int(items[3])),
        last_key_pos=_int8(_as_int(items[4])),
        step_count=_int8(_as_int(items[5])),
    )
    info.read_only = "readonly" in info.flags
    if len(items) == 7:
        info.acl_flags = _string_list(items[6])
    return info


class CommandsInfoCmd(Command):
    """COMMAND reply as a mapping from command name to its info."""

    _zero = staticmethod(dict)

    def _parse(self, reply: Any) -> dict[str, CommandInfo]:
        result = {}
        for entry in _as_list(reply):
            info = parse_command_info(entry)
            result[info.name] = info
        return result


class CommandsInfoCache:
    """Loads command infos once; a failed load is retried on the next call."""

    def __init__(self, fn: Callable[[], dict[str, CommandInfo]]) -> None:
        self._fn = fn
        self._lock = threading.Lock()
        self._done = False
        self._cmds: dict[str, CommandInfo] | None = None

    def get(self) -> dict[str, CommandInfo]:
        """Return the command infos, loading them on first use."""
        if self._done:
            return self._cmds  # type: ignore[return-value]
        with self._lock:
            if not self._done:
                cmds = dict(self._fn())
                for name, info in list(cmds.items()):
                    lower = name.lower()
                    if lower != name:
                        cmds[lower] = info
                self._cmds = cmds
                self._done = True
        return self._cmds  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# SLOWLOG


@dataclass
class SlowLog:
    id: int = 0
    time: datetime = _EPOCH
    duration: timedelta = field(default_factory=timedelta)
    args: list[str] = field(default_factory=list)
    client_addr: str = ""
    client_name: str = ""


class SlowLogCmd(Command):
    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[SlowLog]:
        return [self._entry(entry) for entry in _as_list(reply)]

    @staticmethod
    def _entry(entry: Any) -> SlowLog:
        items = _as_list(entry)
        if len(items) < 4:
            raise ValueError(
                f"redis: got {len(items)} elements in slowlog get, expected at least 4"
            )
        log_id = _as_int(items[0])
        created_at = _as_int(items[1])
        costs = _as_int(items[2])
        args = _as_list(items[3])
        if len(args) < 1:
            raise ValueError(
                f"redis: got {len(args)} elements commands reply in slowlog get, "
                "expected at least 1"
            )
        extras = [_as_str(item) for item in items[4:]]
        return SlowLog(
            id=log_id,
            time=_EPOCH + timedelta(seconds=created_at),
            duration=timedelta(microseconds=costs),
            args=[_as_str(arg) for arg in args],
            client_addr=extras[0] if len(extras) > 0 else "",
            client_name=extras[1] if len(extras) > 1 else "",
        )