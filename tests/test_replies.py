from datetime import timedelta

import pytest

from redcluster.command import NilReply, RedisError
from redcluster.replies import (
    ClusterNode,
    ClusterSlot,
    ClusterSlotsCmd,
    CommandInfo,
    CommandsInfoCache,
    CommandsInfoCmd,
    GeoLocation,
    GeoLocationCmd,
    GeoPos,
    GeoPosCmd,
    GeoRadiusQuery,
    ScanCmd,
    SlowLogCmd,
    Z,
    ZSliceCmd,
    ZWithKey,
    ZWithKeyCmd,
    geo_location_args,
    join_host_port,
    parse_command_info,
)


def test_zslice_pairs():
    cmd = ZSliceCmd("zrange", "zs", 0, -1, "withscores")
    cmd.read_reply(["one", "1", "two", "2.5"])
    assert cmd.result() == [Z(score=1.0, member="one"), Z(score=2.5, member="two")]


def test_zslice_bad_score_raises_and_stores():
    cmd = ZSliceCmd("zrange", "zs")
    with pytest.raises(ValueError):
        cmd.read_reply(["one", "abc"])
    assert isinstance(cmd.err, ValueError)


def test_zwithkey():
    cmd = ZWithKeyCmd("bzpopmin", "zs", 0)
    cmd.read_reply(["zs", "m", "3"])
    assert cmd.result() == ZWithKey(key="zs", member="m", score=3.0)


def test_zwithkey_wrong_length():
    cmd = ZWithKeyCmd("bzpopmin", "zs", 0)
    with pytest.raises(ValueError, match="expected 3"):
        cmd.read_reply(["zs", "m"])


def test_scan_result():
    cmd = ScanCmd("scan", 0)
    cmd.read_reply(["17", ["a", "b"]])
    keys, cursor = cmd.result()
    assert keys == ["a", "b"]
    assert cursor == 17


def test_scan_wrong_length():
    cmd = ScanCmd("scan", 0)
    with pytest.raises(ValueError):
        cmd.read_reply(["0"])


def test_scan_error_reply():
    cmd = ScanCmd("scan", 0)
    err = RedisError("ERR boom")
    with pytest.raises(RedisError):
        cmd.read_reply(err)
    with pytest.raises(RedisError, match="ERR boom"):
        cmd.result()


def test_cluster_slots():
    cmd = ClusterSlotsCmd("cluster", "slots")
    cmd.read_reply(
        [
            [0, 4999, ["127.0.0.1", 8220], ["127.0.0.1", 8223]],
            [5000, 9999, ["127.0.0.1", 8221, "abc"]],
        ]
    )
    assert cmd.result() == [
        ClusterSlot(
            start=0,
            end=4999,
            nodes=[ClusterNode(id="", addr="127.0.0.1:8220"), ClusterNode(id="", addr="127.0.0.1:8223")],
        ),
        ClusterSlot(start=5000, end=9999, nodes=[ClusterNode(id="abc", addr="127.0.0.1:8221")]),
    ]


def test_cluster_slots_too_short():
    cmd = ClusterSlotsCmd("cluster", "slots")
    with pytest.raises(ValueError, match="at least 2"):
        cmd.read_reply([[0]])


def test_cluster_slots_bad_address():
    cmd = ClusterSlotsCmd("cluster", "slots")
    with pytest.raises(ValueError, match="expected 2 or 3"):
        cmd.read_reply([[0, 10, ["127.0.0.1"]]])


def test_join_host_port():
    assert join_host_port("127.0.0.1", "8220") == "127.0.0.1:8220"
    assert join_host_port("::1", "8220") == "[::1]:8220"


def test_geo_location_args_default_unit():
    assert geo_location_args(GeoRadiusQuery(radius=5.0), "key") == ["key", 5.0, "km"]


def test_geo_location_args_all_options():
    q = GeoRadiusQuery(
        radius=1.0,
        unit="m",
        with_coord=True,
        with_dist=True,
        with_geohash=True,
        count=3,
        sort="ASC",
        store="dst",
        store_dist="dd",
    )
    assert geo_location_args(q, "key", 1.5, 2.5) == [
        "key", 1.5, 2.5, 1.0, "m", "withcoord", "withdist", "withhash",
        "count", 3, "ASC", "store", "dst", "storedist", "dd",
    ]


def test_geo_location_names_only():
    cmd = GeoLocationCmd(GeoRadiusQuery(radius=1.0), "georadius", "key", 1.0, 2.0)
    cmd.read_reply(["a", "b"])
    assert cmd.result() == [GeoLocation(name="a"), GeoLocation(name="b")]
    assert cmd.args[-2:] == [1.0, "km"]


def test_geo_location_with_options():
    q = GeoRadiusQuery(radius=1.0, with_coord=True, with_dist=True, with_geohash=True)
    cmd = GeoLocationCmd(q, "georadius", "key", 1.0, 2.0)
    cmd.read_reply([["a", "0.5", 7, ["1.25", "2.75"]]])
    assert cmd.result() == [GeoLocation(name="a", longitude=1.25, latitude=2.75, dist=0.5, geohash=7)]


def test_geo_location_bad_coordinates():
    q = GeoRadiusQuery(radius=1.0, with_coord=True)
    cmd = GeoLocationCmd(q, "georadius", "key", 1.0, 2.0)
    with pytest.raises(ValueError, match="coordinates"):
        cmd.read_reply([["a", ["1.0"]]])


def test_geo_pos_with_missing():
    cmd = GeoPosCmd("geopos", "key", "a", "b")
    cmd.read_reply([["1.5", "2.5"], None])
    assert cmd.result() == [GeoPos(longitude=1.5, latitude=2.5), None]


def test_parse_command_info_redis6():
    info = parse_command_info(["get", 2, ["readonly", "fast"], 1, 1, 1, ["@read"]])
    assert info == CommandInfo(
        name="get",
        arity=2,
        flags=["readonly", "fast"],
        acl_flags=["@read"],
        first_key_pos=1,
        last_key_pos=1,
        step_count=1,
        read_only=True,
    )


def test_parse_command_info_redis5_not_readonly():
    info = parse_command_info(["set", -3, ["write"], 1, 1, 1])
    assert info.read_only is False
    assert info.acl_flags == []
    assert info.arity == -3


def test_parse_command_info_bad_length():
    with pytest.raises(ValueError, match="wanted 7"):
        parse_command_info(["get", 2])


def test_commands_info_cmd():
    cmd = CommandsInfoCmd("command")
    cmd.read_reply([["get", 2, ["readonly"], 1, 1, 1], ["set", -3, ["write"], 1, 1, 1]])
    result = cmd.result()
    assert set(result) == {"get", "set"}
    assert result["get"].read_only is True


def test_commands_info_cache_lowercases_and_caches():
    calls = []
    info = CommandInfo(name="MYEXT")

    def load():
        calls.append(1)
        return {"MYEXT": info}

    cache = CommandsInfoCache(load)
    first = cache.get()
    second = cache.get()
    assert first["myext"] is info
    assert first["MYEXT"] is info
    assert second is first
    assert len(calls) == 1


def test_commands_info_cache_retries_after_error():
    attempts = []

    def load():
        attempts.append(1)
        if len(attempts) == 1:
            raise RedisError("ERR unavailable")
        return {"get": CommandInfo(name="get")}

    cache = CommandsInfoCache(load)
    with pytest.raises(RedisError):
        cache.get()
    assert set(cache.get()) == {"get"}
    assert len(attempts) == 2


def test_slowlog_entries():
    cmd = SlowLogCmd("slowlog", "get")
    cmd.read_reply(
        [
            [1, 0, 5, ["get", "foo"], "127.0.0.1:5000", "client"],
            [2, 0, 10, ["ping"]],
        ]
    )
    logs = cmd.result()
    assert [log.id for log in logs] == [1, 2]
    assert logs[0].args == ["get", "foo"]
    assert logs[0].duration == timedelta(microseconds=5)
    assert logs[0].client_addr == "127.0.0.1:5000"
    assert logs[0].client_name == "client"
    assert logs[1].client_addr == ""
    assert logs[0].time.timestamp() == 0


def test_slowlog_too_short():
    cmd = SlowLogCmd("slowlog", "get")
    with pytest.raises(ValueError, match="at least 4"):
        cmd.read_reply([[1, 0, 5]])


def test_slowlog_empty_args():
    cmd = SlowLogCmd("slowlog", "get")
    with pytest.raises(ValueError, match="at least 1"):
        cmd.read_reply([[1, 0, 5, []]])


def test_nil_reply_raises_nil():
    cmd = ZSliceCmd("zrange", "zs")
    with pytest.raises(NilReply):
        cmd.read_reply(None)