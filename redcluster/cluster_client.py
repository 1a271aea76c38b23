"""A client that spreads work over the nodes of a cluster.

Every node client is made by ``ClusterOptions.new_client``. The client
methods used here are ``cluster_slots()`` (a list of ``ClusterSlot``),
``db_size()``, ``script_load(script)``, ``script_flush()``,
``script_exists(*hashes)``, ``ping()`` and ``close()``. Each returns its
value or raises.
"""

from __future__ import annotations

import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Iterable

from redcluster.cluster import (
    ClusterNodeHandle,
    ClusterNodes,
    ClusterOptions,
    ClusterState,
    ClusterStateHolder,
)

__all__ = ["ClusterClient"]


class ClusterClient:
    """Routes work to cluster nodes according to the current slot map.

    ``gc_delay`` is how many seconds after a state reload the nodes that are
    no longer part of the cluster are closed; ``None`` keeps them.
    """

    def __init__(self, options: ClusterOptions, *, gc_delay: float | None = 60.0) -> None:
        self.options = options
        self.nodes = ClusterNodes(options)
        self.state = ClusterStateHolder(self._load_state)
        self._gc_delay = gc_delay

    def __enter__(self) -> ClusterClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- state --------------------------------------------------------------

    def _load_state(self) -> ClusterState:
        if self.options.cluster_slots is not None:
            slots = self.options.cluster_slots()
            return ClusterState(self.nodes, slots, "", gc_delay=self._gc_delay)

        addrs = self.nodes.addrs()
        first_err: BaseException | None = None
        for addr in random.sample(addrs, len(addrs)):
            try:
                node = self.nodes.get(addr)
                slots = node.client.cluster_slots()
            except Exception as exc:
                if first_err is None:
                    first_err = exc
                continue
            return ClusterState(self.nodes, slots, node.addr, gc_delay=self._gc_delay)

        # No node answered; maybe every address changed. Fall back to the
        # seed addresses so that host names get resolved again.
        self.nodes._reset_active_addrs()
        assert first_err is not None
        raise first_err

    def reload_state(self) -> None:
        """Reload the slot map in the background."""
        self.state.lazy_reload()

    def close(self) -> None:
        """Close every node client."""
        self.nodes.close()

    # -- routing ------------------------------------------------------------

    def slot_read_only_node(self, state: ClusterState, slot: int) -> ClusterNodeHandle:
        """The node that read-only commands for ``slot`` go to."""
        if self.options.route_by_latency:
            return state.slot_closest_node(slot)
        if self.options.route_randomly:
            return state.slot_random_node(slot)
        return state.slot_slave_node(slot)

    def master_for_slot(self, slot: int) -> Any:
        """The client of the master serving ``slot``."""
        return self.state.get().slot_master_node(slot).client

    def slave_for_slot(self, slot: int) -> Any:
        """The client of a replica serving ``slot``, chosen by the routing options."""
        return self.slot_read_only_node(self.state.get(), slot).client

    # -- fan-out ------------------------------------------------------------

    @staticmethod
    def _run_all(nodes: Iterable[ClusterNodeHandle], fn: Callable[[Any], Any]) -> None:
        nodes = list(nodes)
        if not nodes:
            return
        first_err: BaseException | None = None
        with ThreadPoolExecutor(max_workers=len(nodes)) as pool:
            futures = [pool.submit(fn, node.client) for node in nodes]
            for future in as_completed(futures):
                exc = future.exception()
                if exc is not None and first_err is None:
                    first_err = exc
        if first_err is not None:
            raise first_err

    def for_each_master(self, fn: Callable[[Any], Any]) -> None:
        """Call ``fn`` concurrently on each master; raise the first error."""
        state = self.state.reload_or_get()
        self._run_all(state.masters, fn)

    def for_each_slave(self, fn: Callable[[Any], Any]) -> None:
        """Call ``fn`` concurrently on each replica; raise the first error."""
        state = self.state.reload_or_get()
        self._run_all(state.slaves, fn)

    def for_each_shard(self, fn: Callable[[Any], Any]) -> None:
        """Call ``fn`` concurrently on every known node; raise the first error."""
        state = self.state.reload_or_get()
        self._run_all([*state.masters, *state.slaves], fn)

    # -- commands that span the cluster -------------------------------------

    def db_size(self) -> int:
        """The number of keys summed over all masters."""
        lock = threading.Lock()
        total = 0

        def add(master: Any) -> None:
            nonlocal total
            n = master.db_size()
            with lock:
                total += n

        self.for_each_master(add)
        return total

    def script_load(self, script: str) -> str:
        """Load ``script`` on every node and return its hash."""
        lock = threading.Lock()
        digest = ""

        def load(shard: Any) -> None:
            nonlocal digest
            value = shard.script_load(script)
            with lock:
                if not digest:
                    digest = value

        self.for_each_shard(load)
        return digest

    def script_flush(self) -> None:
        """Remove all scripts from every node."""
        self.for_each_shard(lambda shard: shard.script_flush())

    def script_exists(self, *args: str) -> list[bool]:
        """For each hash, whether the script is loaded on every node."""
        hashes = list(args)
        lock = threading.Lock()
        result = [True] * len(hashes)

        def check(shard: Any) -> None:
            found = list(shard.script_exists(*hashes))
            with lock:
                for i, present in enumerate(found[: len(result)]):
                    result[i] = result[i] and bool(present)

        self.for_each_shard(check)
        return result