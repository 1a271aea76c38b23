from datetime import datetime, timedelta, timezone

import pytest

from redcluster.command import NilReply, RedisError
from redcluster.stream import (
    XAutoClaimCmd,
    XAutoClaimJustIDCmd,
    XInfoConsumer,
    XInfoConsumersCmd,
    XInfoGroup,
    XInfoGroupsCmd,
    XInfoStreamCmd,
    XInfoStreamFullCmd,
    XMessage,
    XMessageSliceCmd,
    XPendingCmd,
    XPendingExtCmd,
    XStream,
    XStreamSliceCmd,
    parse_message,
    parse_message_slice,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_parse_message_reads_id_and_values():
    msg = parse_message(["1-0", ["f1", "v1", "f2", "v2"]])
    assert msg == XMessage(id="1-0", values={"f1": "v1", "f2": "v2"})


def test_parse_message_decodes_bytes():
    msg = parse_message([b"2-0", [b"k", b"v"]])
    assert msg.id == "2-0"
    assert msg.values == {"k": "v"}


def test_parse_message_nil_values():
    msg = parse_message(["3-0", None])
    assert msg.values is None
    assert msg.id == "3-0"


def test_parse_message_wrong_length():
    with pytest.raises(ValueError, match="got 3, wanted 2"):
        parse_message(["1-0", [], "extra"])


def test_parse_message_nil_raises():
    with pytest.raises(NilReply):
        parse_message(None)


def test_parse_message_slice_keeps_order():
    reply = [["1-0", ["a", "1"]], ["2-0", ["b", "2"]]]
    msgs = parse_message_slice(reply)
    assert [m.id for m in msgs] == ["1-0", "2-0"]
    assert msgs[1].values == {"b": "2"}


def test_message_slice_cmd_result():
    cmd = XMessageSliceCmd("xrange", "s", "-", "+")
    cmd.read_reply([["1-0", ["a", "1"]]])
    assert cmd.result() == [XMessage("1-0", {"a": "1"})]


def test_message_slice_cmd_empty_string_form():
    cmd = XMessageSliceCmd("xrange", "s", "-", "+")
    cmd.read_reply([])
    assert str(cmd) == "xrange s - +: []"


def test_message_slice_cmd_error_reply_is_stored():
    cmd = XMessageSliceCmd("xrange", "s", "-", "+")
    err = RedisError("ERR wrong type")
    with pytest.raises(RedisError):
        cmd.read_reply(err)
    assert cmd.err is err
    with pytest.raises(RedisError, match="ERR wrong type"):
        cmd.result()


def test_stream_slice_cmd():
    cmd = XStreamSliceCmd("xread", "streams", "s1", "0")
    cmd.read_reply([["s1", [["1-0", ["a", "1"]]]]])
    assert cmd.result() == [XStream("s1", [XMessage("1-0", {"a": "1"})])]


def test_stream_slice_cmd_bad_entry():
    cmd = XStreamSliceCmd("xread", "streams", "s1", "0")
    with pytest.raises(ValueError, match="got 1, wanted 2"):
        cmd.read_reply([["s1"]])


def test_pending_cmd_full():
    cmd = XPendingCmd("xpending", "s", "g")
    cmd.read_reply([3, "1-0", "5-0", [["alice", "2"], ["bob", "1"]]])
    val = cmd.result()
    assert val.count == 3
    assert (val.lower, val.higher) == ("1-0", "5-0")
    assert val.consumers == {"alice": 2, "bob": 1}
    assert sum(val.consumers.values()) == val.count


def test_pending_cmd_empty_group():
    cmd = XPendingCmd("xpending", "s", "g")
    cmd.read_reply([0, None, None, None])
    val = cmd.result()
    assert (val.count, val.lower, val.higher, val.consumers) == (0, "", "", {})


def test_pending_cmd_wrong_length():
    cmd = XPendingCmd("xpending", "s", "g")
    with pytest.raises(ValueError, match="got 2, wanted 4"):
        cmd.read_reply([0, None])


def test_pending_ext_cmd():
    cmd = XPendingExtCmd("xpending", "s", "g", "-", "+", 10)
    cmd.read_reply([["1-0", "alice", 1500, 2]])
    (entry,) = cmd.result()
    assert entry.id == "1-0"
    assert entry.consumer == "alice"
    assert entry.idle == timedelta(milliseconds=1500)
    assert entry.retry_count == 2


def test_auto_claim_cmd_result_tuple():
    cmd = XAutoClaimCmd("xautoclaim", "s", "g", "c", 0, "0-0")
    cmd.read_reply(["7-0", [["1-0", ["a", "1"]]]])
    messages, start = cmd.result()
    assert start == "7-0"
    assert messages == [XMessage("1-0", {"a": "1"})]


def test_auto_claim_just_id_cmd():
    cmd = XAutoClaimJustIDCmd("xautoclaim", "s", "g", "c", 0, "0-0", "justid")
    cmd.read_reply(["0-0", ["1-0", "2-0"]])
    assert cmd.result() == (["1-0", "2-0"], "0-0")


def test_info_consumers_cmd():
    cmd = XInfoConsumersCmd("s", "g")
    assert cmd.args == ["xinfo", "consumers", "s", "g"]
    cmd.read_reply([["name", "alice", "pending", "2", "idle", "100"]])
    assert cmd.result() == [XInfoConsumer(name="alice", pending=2, idle=100)]


def test_info_consumers_unexpected_key():
    cmd = XInfoConsumersCmd("s", "g")
    with pytest.raises(ValueError, match="unexpected content bogus in XINFO CONSUMERS reply"):
        cmd.read_reply([["name", "alice", "bogus", "2", "idle", "100"]])


def test_info_consumers_wrong_length():
    cmd = XInfoConsumersCmd("s", "g")
    with pytest.raises(ValueError, match="got 2 elements in XINFO CONSUMERS reply, wanted 6"):
        cmd.read_reply([["name", "alice"]])


def test_info_groups_cmd():
    cmd = XInfoGroupsCmd("s")
    assert cmd.args == ["xinfo", "groups", "s"]
    cmd.read_reply(
        [["name", "g", "consumers", "1", "pending", "3", "last-delivered-id", "4-0"]]
    )
    assert cmd.result() == [
        XInfoGroup(name="g", consumers=1, pending=3, last_delivered_id="4-0")
    ]


def test_info_groups_wrong_length():
    cmd = XInfoGroupsCmd("s")
    with pytest.raises(ValueError, match="got 2 elements in XINFO GROUPS reply, wanted 8"):
        cmd.read_reply([["name", "g"]])


def test_info_stream_cmd_with_missing_entries():
    cmd = XInfoStreamCmd("s")
    cmd.read_reply(
        [
            "length", 0,
            "radix-tree-keys", 1,
            "radix-tree-nodes", 2,
            "groups", 0,
            "last-generated-id", "0-0",
            "first-entry", None,
            "last-entry", None,
        ]
    )
    info = cmd.result()
    assert (info.length, info.radix_tree_keys, info.radix_tree_nodes) == (0, 1, 2)
    assert info.last_generated_id == "0-0"
    assert info.first_entry == XMessage()
    assert info.last_entry == XMessage()


def test_info_stream_cmd_with_entries():
    cmd = XInfoStreamCmd("s")
    cmd.read_reply(
        [
            "length", 2,
            "radix-tree-keys", 1,
            "radix-tree-nodes", 2,
            "groups", 1,
            "last-generated-id", "2-0",
            "first-entry", ["1-0", ["a", "1"]],
            "last-entry", ["2-0", ["b", "2"]],
        ]
    )
    info = cmd.result()
    assert info.first_entry == XMessage("1-0", {"a": "1"})
    assert info.last_entry == XMessage("2-0", {"b": "2"})
    assert info.groups == 1


def test_info_stream_cmd_wrong_length():
    cmd = XInfoStreamCmd("s")
    with pytest.raises(ValueError, match="in XINFO STREAM reply"):
        cmd.read_reply(["length", 0])


def test_info_stream_full_cmd():
    cmd = XInfoStreamFullCmd("xinfo", "stream", "s", "full")
    consumer = [
        "name", "alice",
        "seen-time", 1600000000000,
        "pel-count", 1,
        "pending", [["1-0", 1600000000000, 1]],
    ]
    group = [
        "name", "g",
        "last-delivered-id", "1-0",
        "pel-count", 1,
        "pending", [["1-0", "alice", 1600000000000, 1]],
        "consumers", [consumer],
    ]
    cmd.read_reply(
        [
            "length", 1,
            "radix-tree-keys", 1,
            "radix-tree-nodes", 2,
            "last-generated-id", "1-0",
            "entries", [["1-0", ["a", "1"]]],
            "groups", [group],
        ]
    )
    info = cmd.result()
    moment = EPOCH + timedelta(milliseconds=1600000000000)
    assert info.length == 1
    assert info.entries == [XMessage("1-0", {"a": "1"})]
    (g,) = info.groups
    assert (g.name, g.last_delivered_id, g.pel_count) == ("g", "1-0", 1)
    assert g.pending[0].consumer == "alice"
    assert g.pending[0].delivery_time == moment
    (c,) = g.consumers
    assert c.name == "alice"
    assert c.seen_time == moment
    assert c.pending[0].id == "1-0"
    assert c.pending[0].delivery_count == 1


def test_info_stream_full_unexpected_key():
    cmd = XInfoStreamFullCmd("xinfo", "stream", "s", "full")
    reply = [
        "length", 1,
        "radix-tree-keys", 1,
        "radix-tree-nodes", 2,
        "last-generated-id", "1-0",
        "entries", [],
        "bogus", [],
    ]
    with pytest.raises(ValueError, match="unexpected content bogus"):
        cmd.read_reply(reply)