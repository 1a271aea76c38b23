# redcluster

Building blocks for a Redis Cluster client in Python: command objects that
turn already-decoded replies into Python values, and a routing layer that
maps hash slots to master and replica nodes.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Command objects (`redcluster.command`)

A command holds its arguments (`args`), the value read from the server
(`val`) and its error (`err`). Replies are passed to `read_reply()` already
decoded: `None` for a nil reply, `str`/`bytes` for strings, `int` for
integers, `list` for arrays and a `RedisError` instance for an error reply.
A nil reply where a value is required becomes `NilReply`.

- `name()` – the lower-cased command name;
- `full_name()` – the name plus the subcommand for `cluster` and `command`;
- `string_arg(pos)` – the argument at `pos` if it is a string, else `""`;
- `set_err(err)` / `result()` – store an error / return the value or raise
  the stored error;
- `str(cmd)` – the arguments followed by `: value` or `: error`.

```python
from redcluster.command import StringCmd, NilReply

get = StringCmd("get", "key")
get.read_reply("10")
assert get.result() == "10"
assert get.int() == 10
assert get.float() == 10.0
print(get)            # get key: 10

missing = StringCmd("get", "absent")
missing.set_err(NilReply())
missing.result()      # raises NilReply
```

The typed commands are `Cmd` (any reply, with `text()`, `int()`, `float()`
and `bool()`), `SliceCmd`, `StatusCmd`, `IntCmd`, `IntSliceCmd`,
`DurationCmd`, `TimeCmd`, `BoolCmd`, `StringCmd` (with `bytes()`, `bool()`,
`int()`, `float()` and `time()` for RFC 3339 text), `FloatCmd`,
`FloatSliceCmd`, `StringSliceCmd`, `BoolSliceCmd`, `StringStringMapCmd`,
`StringIntMapCmd` and `StringStructMapCmd` (a set of strings).

Helpers: `set_cmds_err(cmds, err)` gives `err` to every command that has no
error yet, `cmds_first_err(cmds)` returns the first error or `None`,
`cmd_first_key_pos(cmd, info)` tells which argument holds the key that
decides the slot, and `format_arg(value)` renders a value as text.

## Stream replies (`redcluster.stream`)

Dataclasses `XMessage`, `XStream`, `XPending`, `XPendingExt`,
`XInfoConsumer`, `XInfoGroup`, `XInfoStream`, `XInfoStreamFull` and their
nested records, filled by `XMessageSliceCmd`, `XStreamSliceCmd`,
`XPendingCmd`, `XPendingExtCmd`, `XAutoClaimCmd`, `XAutoClaimJustIDCmd`,
`XInfoConsumersCmd`, `XInfoGroupsCmd`, `XInfoStreamCmd` and
`XInfoStreamFullCmd`. `parse_message(reply)` and `parse_message_slice(reply)`
decode stream entries directly.

## Other replies (`redcluster.replies`)

- Sorted sets: `Z`, `ZWithKey`, `ZSliceCmd`, `ZWithKeyCmd`;
- scanning: `ScanCmd`, whose `result()` is `(keys, cursor)`;
- `CLUSTER SLOTS`: `ClusterNode`, `ClusterSlot`, `ClusterSlotsCmd`;
- geo: `GeoRadiusQuery`, `geo_location_args(query, *args)`,
  `GeoLocation`, `GeoLocationCmd`, `GeoPos`, `GeoPosCmd`;
- `COMMAND`: `CommandInfo`, `parse_command_info(reply)`, `CommandsInfoCmd`,
  and `CommandsInfoCache`, which calls its loader once (retrying after a
  failure) and adds lower-case aliases for upper-case names;
- `SLOWLOG GET`: `SlowLog`, `SlowLogCmd`;
- `join_host_port(host, port)`.

## Cluster routing (`redcluster.cluster`)

`ClusterOptions` holds the settings; durations are in seconds, and for
timeouts and backoffs 0 picks the default while -1 turns the setting off.
`max_redirects` defaults to 3, and `route_by_latency` or `route_randomly`
switch on `read_only`.

`ClusterNodes` keeps one `ClusterNodeHandle` per address, creating each
node client with `ClusterOptions.new_client`. A `ClusterState` is built
from a list of `ClusterSlot` and answers which node serves a slot:

- `slot_master_node(slot)` – the master;
- `slot_slave_node(slot)` – a replica not marked as failing, else the master;
- `slot_closest_node(slot)` – the healthy node with the lowest latency;
- `slot_random_node(slot)` – a random healthy node.

A node marked with `mark_as_failing()` counts as failing for 15 seconds.
`ClusterStateHolder` loads the state on first use and reloads it in the
background once it is older than 10 seconds. `ClusterError` and
`ClusterClosedError` are raised for an empty or closed node set.

## Cluster client (`redcluster.cluster_client`)

`ClusterClient` loads the slot map from `ClusterOptions.cluster_slots`, or
else by calling `cluster_slots()` on the node clients. It offers
`master_for_slot(slot)`, `slave_for_slot(slot)`, `slot_read_only_node()`,
`for_each_master(fn)`, `for_each_slave(fn)`, `for_each_shard(fn)` (run
concurrently, first error raised), the cluster-wide `db_size()`,
`script_load(script)`, `script_flush()` and `script_exists(*hashes)`, plus
`reload_state()` and `close()`. It is a context manager.

```python
from redcluster.cluster import ClusterOptions
from redcluster.cluster_client import ClusterClient
from redcluster.replies import ClusterNode, ClusterSlot


class NodeClient:
    def __init__(self, options):
        self.addr = options["addr"]

    def db_size(self):
        return 0

    def close(self):
        pass


options = ClusterOptions(
    new_client=NodeClient,
    cluster_slots=lambda: [ClusterSlot(0, 16383, [ClusterNode(addr="10.0.0.1:7000")])],
)
with ClusterClient(options, gc_delay=None) as client:
    assert client.master_for_slot(42).addr == "10.0.0.1:7000"
    assert client.db_size() == 0
```

## What this package does not do

It opens no connections and speaks no wire protocol: replies must already
be decoded, and every node client comes from `new_client`. It does not
compute hash slots from keys, send individual commands, follow `MOVED` or
`ASK` redirects, run pipelines or transactions, or provide pub/sub.