"""Cluster topology: options, node handles, slot maps and state reloading."""

from __future__ import annotations

import ipaddress
import os
import random
import threading
import time
from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Iterator

from redcluster.replies import ClusterSlot, join_host_port

__all__ = [
    "ClusterError",
    "ClusterClosedError",
    "ClusterOptions",
    "ClusterNodeHandle",
    "ClusterNodes",
    "ClusterState",
    "ClusterStateHolder",
    "CommandsByNode",
    "replace_loopback_host",
    "is_loopback",
    "append_if_not_exists",
]

_MAX_UINT32 = 0xFFFFFFFF
_FAILING_TIMEOUT = 15
_STATE_MAX_AGE = 10.0
_LATENCY_PROBES = 10


class ClusterError(Exception):
    """An error raised by the cluster client itself."""


class ClusterClosedError(ClusterError):
    """The cluster client has been closed."""

    def __init__(self, message: str = "redis: client is closed") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Options


@dataclass
class ClusterOptions:
    """Settings of a cluster client.

    Durations are in seconds. For timeouts and backoffs, 0 selects the default
    and -1 disables the setting.
    """

    addrs: list[str] = field(default_factory=list)
    new_client: Callable[[dict[str, Any]], Any] | None = None
    max_redirects: int = 0
    read_only: bool = False
    route_by_latency: bool = False
    route_randomly: bool = False
    cluster_slots: Callable[[], list[ClusterSlot]] | None = None

    dialer: Callable[..., Any] | None = None
    on_connect: Callable[..., Any] | None = None

    username: str = ""
    password: str = ""

    max_retries: int = 0
    min_retry_backoff: float = 0.0
    max_retry_backoff: float = 0.0

    dial_timeout: float = 0.0
    read_timeout: float = 0.0
    write_timeout: float = 0.0

    pool_fifo: bool = False
    pool_size: int = 0
    min_idle_conns: int = 0
    max_conn_age: float = 0.0
    pool_timeout: float = 0.0
    idle_timeout: float = 0.0
    idle_check_frequency: float = 0.0

    tls_config: Any = None

    def __post_init__(self) -> None:
        self.addrs = list(self.addrs)

        if self.max_redirects == -1:
            self.max_redirects = 0
        elif self.max_redirects == 0:
            self.max_redirects = 3

        if self.route_by_latency or self.route_randomly:
            self.read_only = True

        if self.pool_size == 0:
            self.pool_size = 5 * (os.cpu_count() or 1)

        if self.read_timeout == -1:
            self.read_timeout = 0.0
        elif self.read_timeout == 0:
            self.read_timeout = 3.0

        if self.write_timeout == -1:
            self.write_timeout = 0.0
        elif self.write_timeout == 0:
            self.write_timeout = self.read_timeout

        if self.max_retries == 0:
            self.max_retries = -1

        if self.min_retry_backoff == -1:
            self.min_retry_backoff = 0.0
        elif self.min_retry_backoff == 0:
            self.min_retry_backoff = 0.008

        if self.max_retry_backoff == -1:
            self.max_retry_backoff = 0.0
        elif self.max_retry_backoff == 0:
            self.max_retry_backoff = 0.512

    def client_options(self) -> dict[str, Any]:
        """Options for the client of a single node (without its address)."""
        return {
            "dialer": self.dialer,
            "on_connect": self.on_connect,
            "username": self.username,
            "password": self.password,
            "max_retries": self.max_retries,
            "min_retry_backoff": self.min_retry_backoff,
            "max_retry_backoff": self.max_retry_backoff,
            "dial_timeout": self.dial_timeout,
            "read_timeout": self.read_timeout,
            "write_timeout": self.write_timeout,
            "pool_fifo": self.pool_fifo,
            "pool_size": self.pool_size,
            "min_idle_conns": self.min_idle_conns,
            "max_conn_age": self.max_conn_age,
            "pool_timeout": self.pool_timeout,
            "idle_timeout": self.idle_timeout,
            # The cluster client reaps idle connections itself.
            "idle_check_frequency": -1,
            "tls_config": self.tls_config,
            # Nodes given by cluster_slots are probably not in cluster mode,
            # so READONLY must not be sent to them.
            "read_only": self.read_only and self.cluster_slots is None,
        }


# ---------------------------------------------------------------------------
# Nodes


class ClusterNodeHandle:
    """A client for one cluster node, with its latency, health and generation."""

    def __init__(self, options: ClusterOptions, addr: str) -> None:
        if options.new_client is None:
            raise ClusterError("redis: ClusterOptions.new_client is not set")
        client_opts = options.client_options()
        client_opts["addr"] = addr
        self.addr = addr
        self.client = options.new_client(client_opts)

        self._lock = threading.Lock()
        self._latency_us = _MAX_UINT32
        self._generation = 0
        self._failing = 0

        if options.route_by_latency:
            self._start_latency_probe()

    def __str__(self) -> str:
        return str(self.client)

    def __repr__(self) -> str:
        return f"ClusterNodeHandle({self.addr!r})"

    def close(self) -> None:
        self.client.close()

    def _start_latency_probe(self) -> None:
        threading.Thread(target=self._update_latency, daemon=True).start()

    def _update_latency(self) -> None:
        total_us = 0
        for _ in range(_LATENCY_PROBES):
            time.sleep((10 + random.randrange(10)) / 1000)
            start = time.perf_counter()
            try:
                self.client.ping()
            except Exception:
                pass
            total_us += int((time.perf_counter() - start) * 1_000_000)
        latency = int(total_us / _LATENCY_PROBES + 0.5)
        with self._lock:
            self._latency_us = min(latency, _MAX_UINT32)

    def latency(self) -> timedelta:
        """The measured round-trip time; very large until measured."""
        with self._lock:
            return timedelta(microseconds=self._latency_us)

    def mark_as_failing(self) -> None:
        with self._lock:
            self._failing = int(time.time())

    def failing(self) -> bool:
        """Whether the node was marked as failing within the last 15 seconds."""
        with self._lock:
            if self._failing == 0:
                return False
            if int(time.time()) - self._failing < _FAILING_TIMEOUT:
                return True
            self._failing = 0
            return False

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def set_generation(self, gen: int) -> None:
        """Raise the generation to ``gen``; a lower value is ignored."""
        with self._lock:
            if gen >= self._generation:
                self._generation = gen


class ClusterNodes:
    """The set of known nodes, created on demand and keyed by address."""

    def __init__(self, options: ClusterOptions) -> None:
        self.options = options
        self._lock = threading.RLock()
        self._addrs: list[str] = list(options.addrs)
        self._nodes: dict[str, ClusterNodeHandle] = {}
        self._active_addrs: list[str] = []
        self._closed = False
        self._generation = 0

    def close(self) -> None:
        """Close every node; raise the first error after all are closed."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            nodes = list(self._nodes.values())
            self._nodes = {}
            self._active_addrs = []

        first_err: BaseException | None = None
        for node in nodes:
            try:
                node.close()
            except Exception as exc:
                if first_err is None:
                    first_err = exc
        if first_err is not None:
            raise first_err

    def addrs(self) -> list[str]:
        """Active addresses if known, otherwise the seed addresses."""
        with self._lock:
            if self._closed:
                raise ClusterClosedError()
            addrs = list(self._active_addrs or self._addrs)
        if not addrs:
            raise ClusterError("redis: cluster has no nodes")
        return addrs

    def _reset_active_addrs(self) -> None:
        with self._lock:
            self._active_addrs = []

    def next_generation(self) -> int:
        with self._lock:
            self._generation = (self._generation + 1) & _MAX_UINT32
            return self._generation

    def gc(self, generation: int) -> None:
        """Close and forget nodes older than ``generation``."""
        collected = []
        with self._lock:
            self._active_addrs = []
            for addr, node in list(self._nodes.items()):
                if node.generation >= generation:
                    self._active_addrs.append(addr)
                    if self.options.route_by_latency:
                        node._start_latency_probe()
                    continue
                del self._nodes[addr]
                collected.append(node)

        for node in collected:
            try:
                node.close()
            except Exception:
                pass

    def get(self, addr: str) -> ClusterNodeHandle:
        """Return the node for ``addr``, creating it if needed."""
        with self._lock:
            if self._closed:
                raise ClusterClosedError()
            node = self._nodes.get(addr)
            if node is not None:
                return node
            node = ClusterNodeHandle(self.options, addr)
            self._addrs = append_if_not_exists(self._addrs, addr)
            self._nodes[addr] = node
            return node

    def all(self) -> list[ClusterNodeHandle]:
        with self._lock:
            if self._closed:
                raise ClusterClosedError()
            return list(self._nodes.values())

    def random(self) -> ClusterNodeHandle:
        return self.get(random.choice(self.addrs()))


# ---------------------------------------------------------------------------
# Slot map


@dataclass
class _SlotRange:
    start: int
    end: int
    nodes: list[ClusterNodeHandle]


class ClusterState:
    """A snapshot of the slot map, built from CLUSTER SLOTS information.

    Nodes older than this state are collected ``gc_delay`` seconds after it
    is built; ``None`` turns that off.
    """

    def __init__(
        self,
        nodes: ClusterNodes,
        slots: Iterable[ClusterSlot],
        origin: str = "",
        *,
        gc_delay: float | None = 60.0,
    ) -> None:
        self.nodes = nodes
        self.masters: list[ClusterNodeHandle] = []
        self.slaves: list[ClusterNodeHandle] = []
        self.generation = nodes.next_generation()
        self.created_at = time.monotonic()

        try:
            origin_host, _ = _split_host_port(origin)
        except ValueError:
            origin_host = ""
        loopback_origin = is_loopback(origin_host)

        ranges = []
        for slot in slots:
            handles = []
            for i, slot_node in enumerate(slot.nodes):
                addr = slot_node.addr
                if not loopback_origin:
                    addr = replace_loopback_host(addr, origin_host)
                node = nodes.get(addr)
                node.set_generation(self.generation)
                handles.append(node)
                group = self.masters if i == 0 else self.slaves
                if not any(known is node for known in group):
                    group.append(node)
            ranges.append(_SlotRange(slot.start, slot.end, handles))

        ranges.sort(key=lambda r: r.start)
        self._ranges = ranges
        self._ends = [r.end for r in ranges]

        if gc_delay is not None:
            timer = threading.Timer(gc_delay, nodes.gc, args=(self.generation,))
            timer.daemon = True
            timer.start()

    def slot_nodes(self, slot: int) -> list[ClusterNodeHandle]:
        """The nodes serving ``slot``, master first; empty if none."""
        i = bisect_left(self._ends, slot)
        if i >= len(self._ranges):
            return []
        found = self._ranges[i]
        if found.start <= slot <= found.end:
            return list(found.nodes)
        return []

    def slot_master_node(self, slot: int) -> ClusterNodeHandle:
        nodes = self.slot_nodes(slot)
        if nodes:
            return nodes[0]
        return self.nodes.random()

    def slot_slave_node(self, slot: int) -> ClusterNodeHandle:
        """A healthy replica of ``slot``, falling back to its master."""
        nodes = self.slot_nodes(slot)
        if not nodes:
            return self.nodes.random()
        if len(nodes) == 1:
            return nodes[0]
        if len(nodes) == 2:
            slave = nodes[1]
            return nodes[0] if slave.failing() else slave
        for _ in range(10):
            slave = nodes[random.randrange(1, len(nodes))]
            if not slave.failing():
                return slave
        return nodes[0]

    def slot_closest_node(self, slot: int) -> ClusterNodeHandle:
        """The healthy node of ``slot`` with the lowest latency."""
        nodes = self.slot_nodes(slot)
        if not nodes:
            return self.nodes.random()
        best: ClusterNodeHandle | None = None
        for node in nodes:
            if node.failing():
                continue
            if best is None or node.latency() < best.latency():
                best = node
        if best is not None:
            return best
        return self.nodes.random()

    def slot_random_node(self, slot: int) -> ClusterNodeHandle:
        """A random healthy node of ``slot``."""
        nodes = self.slot_nodes(slot)
        if not nodes:
            return self.nodes.random()
        if len(nodes) == 1:
            return nodes[0]
        order = random.sample(range(len(nodes)), len(nodes))
        for idx in order:
            if not nodes[idx].failing():
                return nodes[idx]
        return nodes[order[0]]


class ClusterStateHolder:
    """Holds the current state and reloads it on demand or when it is stale."""

    def __init__(self, load: Callable[[], Any]) -> None:
        self._load = load
        self._state: Any = None
        self._lock = threading.Lock()
        self._reloading = False

    @property
    def state(self) -> Any:
        return self._state

    def reload(self) -> Any:
        state = self._load()
        self._state = state
        return state

    def lazy_reload(self) -> None:
        """Reload in the background unless a reload is already running."""
        with self._lock:
            if self._reloading:
                return
            self._reloading = True
        threading.Thread(target=self._background_reload, daemon=True).start()

    def _background_reload(self) -> None:
        try:
            try:
                self.reload()
            except Exception:
                return
            time.sleep(0.2)
        finally:
            with self._lock:
                self._reloading = False

    def get(self) -> Any:
        """The current state, loading it if there is none yet."""
        state = self._state
        if state is None:
            return self.reload()
        if time.monotonic() - state.created_at > _STATE_MAX_AGE:
            self.lazy_reload()
        return state

    def reload_or_get(self) -> Any:
        try:
            return self.reload()
        except Exception:
            return self.get()


class CommandsByNode:
    """Commands grouped by the node they are sent to; safe across threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_node: dict[ClusterNodeHandle, list[Any]] = {}

    def add(self, node: ClusterNodeHandle, *args: Any) -> None:
        with self._lock:
            self._by_node.setdefault(node, []).extend(args)

    def items(self) -> list[tuple[ClusterNodeHandle, list[Any]]]:
        with self._lock:
            return [(node, list(cmds)) for node, cmds in self._by_node.items()]

    def __getitem__(self, node: ClusterNodeHandle) -> list[Any]:
        with self._lock:
            return list(self._by_node[node])

    def __contains__(self, node: object) -> bool:
        with self._lock:
            return node in self._by_node

    def __iter__(self) -> Iterator[ClusterNodeHandle]:
        with self._lock:
            return iter(list(self._by_node))

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_node)


# ---------------------------------------------------------------------------
# Address helpers


def _split_host_port(hostport: str) -> tuple[str, str]:
    i = hostport.rfind(":")
    if i < 0:
        raise ValueError(f"address {hostport}: missing port in address")
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        if end + 1 == len(hostport):
            raise ValueError(f"address {hostport}: missing port in address")
        if end + 1 != i:
            if hostport[end + 1] == ":":
                raise ValueError(f"address {hostport}: too many colons in address")
            raise ValueError(f"address {hostport}: missing port in address")
        host = hostport[1:end]
        if "[" in hostport[1:] or "]" in hostport[end + 1 :]:
            raise ValueError(f"address {hostport}: unexpected bracket in address")
    else:
        host = hostport[:i]
        if ":" in host:
            raise ValueError(f"address {hostport}: too many colons in address")
        if "[" in hostport or "]" in hostport:
            raise ValueError(f"address {hostport}: unexpected bracket in address")
    return host, hostport[i + 1 :]


def _parse_ip(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if "%" in host:
        return None
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _ip_is_loopback(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped.is_loopback
    return ip.is_loopback


def replace_loopback_host(node_addr: str, origin_host: str) -> str:
    """Put ``origin_host`` in place of a loopback IP in ``node_addr``."""
    try:
        node_host, node_port = _split_host_port(node_addr)
    except ValueError:
        return node_addr
    ip = _parse_ip(node_host)
    if ip is None or not _ip_is_loopback(ip):
        return node_addr
    return join_host_port(origin_host, node_port)


def is_loopback(host: str) -> bool:
    """Whether ``host`` is a loopback IP; anything that is not an IP counts."""
    ip = _parse_ip(host)
    if ip is None:
        return True
    return _ip_is_loopback(ip)


def append_if_not_exists(items: Iterable[str], *args: str) -> list[str]:
    """``items`` followed by those of ``args`` not already present."""
    result = list(items)
    for item in args:
        if item not in result:
            result.append(item)
    return result