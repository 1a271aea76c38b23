"""Stream replies: messages, pending entries and XINFO reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from redcluster.command import (
    Command,
    NilReply,
    _as_int,
    _as_int_text,
    _as_list,
    _as_str,
    _pairs,
)

__all__ = [
    "XMessage",
    "XStream",
    "XPending",
    "XPendingExt",
    "XInfoConsumer",
    "XInfoGroup",
    "XInfoStream",
    "XInfoStreamFull",
    "XInfoStreamGroup",
    "XInfoStreamGroupPending",
    "XInfoStreamConsumer",
    "XInfoStreamConsumerPending",
    "XMessageSliceCmd",
    "XStreamSliceCmd",
    "XPendingCmd",
    "XPendingExtCmd",
    "XAutoClaimCmd",
    "XAutoClaimJustIDCmd",
    "XInfoConsumersCmd",
    "XInfoGroupsCmd",
    "XInfoStreamCmd",
    "XInfoStreamFullCmd",
    "parse_message",
    "parse_message_slice",
]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Records


@dataclass
class XMessage:
    id: str = ""
    values: dict[str, Any] | None = None


@dataclass
class XStream:
    stream: str
    messages: list[XMessage] = field(default_factory=list)


@dataclass
class XPending:
    count: int
    lower: str
    higher: str
    consumers: dict[str, int] = field(default_factory=dict)


@dataclass
class XPendingExt:
    id: str
    consumer: str
    idle: timedelta
    retry_count: int


@dataclass
class XInfoConsumer:
    name: str = ""
    pending: int = 0
    idle: int = 0


@dataclass
class XInfoGroup:
    name: str = ""
    consumers: int = 0
    pending: int = 0
    last_delivered_id: str = ""


@dataclass
class XInfoStream:
    length: int = 0
    radix_tree_keys: int = 0
    radix_tree_nodes: int = 0
    groups: int = 0
    last_generated_id: str = ""
    first_entry: XMessage = field(default_factory=XMessage)
    last_entry: XMessage = field(default_factory=XMessage)


@dataclass
class XInfoStreamGroupPending:
    id: str
    consumer: str
    delivery_time: datetime
    delivery_count: int


@dataclass
class XInfoStreamConsumerPending:
    id: str
    delivery_time: datetime
    delivery_count: int


@dataclass
class XInfoStreamConsumer:
    name: str = ""
    seen_time: datetime = _EPOCH
    pel_count: int = 0
    pending: list[XInfoStreamConsumerPending] = field(default_factory=list)


@dataclass
class XInfoStreamGroup:
    name: str = ""
    last_delivered_id: str = ""
    pel_count: int = 0
    pending: list[XInfoStreamGroupPending] = field(default_factory=list)
    consumers: list[XInfoStreamConsumer] = field(default_factory=list)


@dataclass
class XInfoStreamFull:
    length: int = 0
    radix_tree_keys: int = 0
    radix_tree_nodes: int = 0
    last_generated_id: str = ""
    entries: list[XMessage] = field(default_factory=list)
    groups: list[XInfoStreamGroup] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing helpers


def _parse_int_base0(text: str) -> int:
    """Parse an integer whose base is given by its prefix (0x, 0o, 0b, 0)."""
    if not text:
        raise ValueError("invalid syntax for integer: ''")
    sign = 1
    body = text
    if body[0] in "+-":
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    lower = body.lower()
    if lower.startswith("0x"):
        base, digits = 16, body[2:]
    elif lower.startswith("0b"):
        base, digits = 2, body[2:]
    elif lower.startswith("0o"):
        base, digits = 8, body[2:]
    elif body.startswith("0") and len(body) > 1:
        base, digits = 8, body[1:]
    else:
        base, digits = 10, body
    if not digits or not digits.replace("_", "").isalnum():
        raise ValueError(f"invalid syntax for integer: {text!r}")
    return sign * int(digits, base)


def _ms_time(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def _expect_len(items: list, wanted: int, what: str) -> None:
    if len(items) != wanted:
        raise ValueError(f"redis: got {len(items)} elements in {what} reply, wanted {wanted}")


def _unexpected(key: str, what: str) -> ValueError:
    return ValueError(f"redis: unexpected content {key} in {what} reply")


def parse_message(reply: Any) -> XMessage:
    """Decode a ``[id, [field, value, ...]]`` stream entry."""
    items = _as_list(reply)
    if len(items) != 2:
        raise ValueError(f"got {len(items)}, wanted 2")
    msg_id = _as_str(items[0])
    raw_values = items[1]
    if raw_values is None:
        return XMessage(id=msg_id, values=None)
    values = {_as_str(k): _as_str(v) for k, v in _pairs(_as_list(raw_values))}
    return XMessage(id=msg_id, values=values)


def parse_message_slice(reply: Any) -> list[XMessage]:
    """Decode an array of stream entries."""
    return [parse_message(item) for item in _as_list(reply)]


def _parse_group_pending(reply: Any) -> list[XInfoStreamGroupPending]:
    pending = []
    for entry in _as_list(reply):
        items = _as_list(entry)
        _expect_len(items, 4, "XINFO STREAM FULL")
        pending.append(
            XInfoStreamGroupPending(
                id=_as_str(items[0]),
                consumer=_as_str(items[1]),
                delivery_time=_ms_time(_as_int(items[2])),
                delivery_count=_as_int(items[3]),
            )
        )
    return pending


def _parse_consumer_pending(reply: Any) -> list[XInfoStreamConsumerPending]:
    pending = []
    for entry in _as_list(reply):
        items = _as_list(entry)
        _expect_len(items, 3, "XINFO STREAM")
        pending.append(
            XInfoStreamConsumerPending(
                id=_as_str(items[0]),
                delivery_time=_ms_time(_as_int(items[1])),
                delivery_count=_as_int(items[2]),
            )
        )
    return pending


def _parse_stream_consumers(reply: Any) -> list[XInfoStreamConsumer]:
    consumers = []
    for entry in _as_list(reply):
        items = _as_list(entry)
        _expect_len(items, 8, "XINFO STREAM FULL")
        consumer = XInfoStreamConsumer()
        for raw_key, value in _pairs(items):
            key = _as_str(raw_key)
            if key == "name":
                consumer.name = _as_str(value)
            elif key == "seen-time":
                consumer.seen_time = _ms_time(_as_int(value))
            elif key == "pel-count":
                consumer.pel_count = _as_int(value)
            elif key == "pending":
                consumer.pending = _parse_consumer_pending(value)
            else:
                raise _unexpected(key, "XINFO STREAM")
        consumers.append(consumer)
    return consumers


def _parse_stream_groups(reply: Any) -> list[XInfoStreamGroup]:
    groups = []
    for entry in _as_list(reply):
        items = _as_list(entry)
        _expect_len(items, 10, "XINFO STREAM FULL")
        group = XInfoStreamGroup()
        for raw_key, value in _pairs(items):
            key = _as_str(raw_key)
            if key == "name":
                group.name = _as_str(value)
            elif key == "last-delivered-id":
                group.last_delivered_id = _as_str(value)
            elif key == "pel-count":
                group.pel_count = _as_int(value)
            elif key == "pending":
                group.pending = _parse_group_pending(value)
            elif key == "consumers":
                group.consumers = _parse_stream_consumers(value)
            else:
                raise _unexpected(key, "XINFO STREAM")
        groups.append(group)
    return groups


def _message_or_empty(reply: Any) -> XMessage:
    try:
        return parse_message(reply)
    except NilReply:
        return XMessage()


# ---------------------------------------------------------------------------
# Commands


class XMessageSliceCmd(Command):
    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[XMessage]:
        return parse_message_slice(reply)


class XStreamSliceCmd(Command):
    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[XStream]:
        streams = []
        for entry in _as_list(reply):
            items = _as_list(entry)
            if len(items) != 2:
                raise ValueError(f"got {len(items)}, wanted 2")
            streams.append(XStream(_as_str(items[0]), parse_message_slice(items[1])))
        return streams


class XPendingCmd(Command):
    """The summary form of XPENDING."""

    def _parse(self, reply: Any) -> XPending:
        items = _as_list(reply)
        if len(items) != 4:
            raise ValueError(f"got {len(items)}, wanted 4")
        count = _as_int(items[0])
        lower = "" if items[1] is None else _as_str(items[1])
        higher = "" if items[2] is None else _as_str(items[2])
        consumers: dict[str, int] = {}
        if items[3] is not None:
            for entry in _as_list(items[3]):
                pair = _as_list(entry)
                if len(pair) != 2:
                    raise ValueError(f"got {len(pair)}, wanted 2")
                consumers[_as_str(pair[0])] = _as_int_text(pair[1])
        return XPending(count=count, lower=lower, higher=higher, consumers=consumers)


class XPendingExtCmd(Command):
    """The extended form of XPENDING."""

    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[XPendingExt]:
        result = []
        for entry in _as_list(reply):
            items = _as_list(entry)
            if len(items) != 4:
                raise ValueError(f"got {len(items)}, wanted 4")
            msg_id = _as_str(items[0])
            consumer = "" if items[1] is None else _as_str(items[1])
            idle = 0 if items[2] is None else _as_int(items[2])
            retry_count = 0 if items[3] is None else _as_int(items[3])
            result.append(
                XPendingExt(
                    id=msg_id,
                    consumer=consumer,
                    idle=timedelta(milliseconds=idle),
                    retry_count=retry_count,
                )
            )
        return result


class XAutoClaimCmd(Command):
    """XAUTOCLAIM: the claimed messages and the cursor to continue from."""

    _zero = staticmethod(list)

    def __init__(self, *args: Any) -> None:
        super().__init__(*args)
        self.start = ""

    def _parse(self, reply: Any) -> list[XMessage]:
        items = _as_list(reply)
        if len(items) != 2:
            raise ValueError(f"got {len(items)}, wanted 2")
        self.start = _as_str(items[0])
        return parse_message_slice(items[1])

    def result(self) -> tuple[list[XMessage], str]:
        """Return ``(messages, start)``, or raise the stored error."""
        return super().result(), self.start


class XAutoClaimJustIDCmd(Command):
    """XAUTOCLAIM ... JUSTID: the claimed ids and the cursor to continue from."""

    _zero = staticmethod(list)

    def __init__(self, *args: Any) -> None:
        super().__init__(*args)
        self.start = ""

    def _parse(self, reply: Any) -> list[str]:
        items = _as_list(reply)
        if len(items) != 2:
            raise ValueError(f"got {len(items)}, wanted 2")
        self.start = _as_str(items[0])
        return [_as_str(item) for item in _as_list(items[1])]

    def result(self) -> tuple[list[str], str]:
        """Return ``(ids, start)``, or raise the stored error."""
        return super().result(), self.start


class XInfoConsumersCmd(Command):
    _zero = staticmethod(list)

    def __init__(self, stream: str, group: str) -> None:
        super().__init__("xinfo", "consumers", stream, group)

    def _parse(self, reply: Any) -> list[XInfoConsumer]:
        return [self._consumer(entry) for entry in _as_list(reply)]

    @staticmethod
    def _consumer(entry: Any) -> XInfoConsumer:
        items = _as_list(entry)
        if len(items) != 6:
            raise ValueError(
                f"redis: got {len(items)} elements in XINFO CONSUMERS reply, wanted 6"
            )
        consumer = XInfoConsumer()
        for raw_key, raw_value in _pairs(items):
            key = _as_str(raw_key)
            value = _as_str(raw_value)
            if key == "name":
                consumer.name = value
            elif key == "pending":
                consumer.pending = _parse_int_base0(value)
            elif key == "idle":
                consumer.idle = _parse_int_base0(value)
            else:
                raise _unexpected(key, "XINFO CONSUMERS")
        return consumer


class XInfoGroupsCmd(Command):
    _zero = staticmethod(list)

    def __init__(self, stream: str) -> None:
        super().__init__("xinfo", "groups", stream)

    def _parse(self, reply: Any) -> list[XInfoGroup]:
        return [self._group(entry) for entry in _as_list(reply)]

    @staticmethod
    def _group(entry: Any) -> XInfoGroup:
        items = _as_list(entry)
        _expect_len(items, 8, "XINFO GROUPS")
        group = XInfoGroup()
        for raw_key, raw_value in _pairs(items):
            key = _as_str(raw_key)
            value = _as_str(raw_value)
            if key == "name":
                group.name = value
            elif key == "consumers":
                group.consumers = _parse_int_base0(value)
            elif key == "pending":
                group.pending = _parse_int_base0(value)
            elif key == "last-delivered-id":
                group.last_delivered_id = value
            else:
                raise _unexpected(key, "XINFO GROUPS")
        return group


class XInfoStreamCmd(Command):
    def __init__(self, stream: str) -> None:
        super().__init__("xinfo", "stream", stream)

    def _parse(self, reply: Any) -> XInfoStream:
        items = _as_list(reply)
        _expect_len(items, 14, "XINFO STREAM")
        info = XInfoStream()
        for raw_key, value in _pairs(items):
            key = _as_str(raw_key)
            if key == "length":
                info.length = _as_int(value)
            elif key == "radix-tree-keys":
                info.radix_tree_keys = _as_int(value)
            elif key == "radix-tree-nodes":
                info.radix_tree_nodes = _as_int(value)
            elif key == "groups":
                info.groups = _as_int(value)
            elif key == "last-generated-id":
                info.last_generated_id = _as_str(value)
            elif key == "first-entry":
                info.first_entry = _message_or_empty(value)
            elif key == "last-entry":
                info.last_entry = _message_or_empty(value)
            else:
                raise _unexpected(key, "XINFO STREAM")
        return info


class XInfoStreamFullCmd(Command):
    def _parse(self, reply: Any) -> XInfoStreamFull:
        items = _as_list(reply)
        _expect_len(items, 12, "XINFO STREAM FULL")
        info = XInfoStreamFull()
        for raw_key, value in _pairs(items):
            key = _as_str(raw_key)
            if key == "length":
                info.length = _as_int(value)
            elif key == "radix-tree-keys":
                info.radix_tree_keys = _as_int(value)
            elif key == "radix-tree-nodes":
                info.radix_tree_nodes = _as_int(value)
            elif key == "last-generated-id":
                info.last_generated_id = _as_str(value)
            elif key == "entries":
                info.entries = parse_message_slice(value)
            elif key == "groups":
                info.groups = _parse_stream_groups(value)
            else:
                raise _unexpected(key, "XINFO STREAM")
        return info