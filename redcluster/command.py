"""Command objects: arguments, decoded replies and conversion helpers.

Replies are handed to :meth:`Command.read_reply` already decoded from the wire:
``None`` for a nil reply, ``str``/``bytes`` for simple and bulk strings,
``int`` for integers, ``list`` for arrays and a :class:`RedisError` instance
for an error reply.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable

__all__ = [
    "RedisError",
    "NilReply",
    "Command",
    "Cmd",
    "SliceCmd",
    "StatusCmd",
    "IntCmd",
    "IntSliceCmd",
    "DurationCmd",
    "TimeCmd",
    "BoolCmd",
    "StringCmd",
    "FloatCmd",
    "FloatSliceCmd",
    "StringSliceCmd",
    "BoolSliceCmd",
    "StringStringMapCmd",
    "StringIntMapCmd",
    "StringStructMapCmd",
    "set_cmds_err",
    "cmds_first_err",
    "cmd_first_key_pos",
    "format_arg",
]


class RedisError(Exception):
    """An error reply sent by the server."""


class NilReply(RedisError):
    """The server answered with a nil reply."""

    def __init__(self, message: str = "redis: nil") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Scalar parsing helpers


_INT_RE = re.compile(r"[+-]?[0-9]+\Z")
_TIME_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})\Z"
)
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_int_text(text: str) -> int:
    if not _INT_RE.match(text):
        raise ValueError(f"invalid syntax for integer: {text!r}")
    return int(text)


def _parse_float_text(text: str) -> float:
    if not text or text.strip() != text or "_" in text:
        raise ValueError(f"invalid syntax for float: {text!r}")
    return float(text)


def _parse_bool_text(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"invalid syntax for bool: {text!r}")


def _parse_time_text(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if not match:
        raise ValueError(f"cannot parse {text!r} as an RFC 3339 time")
    year, month, day, hour, minute, second, frac, zone = match.groups()
    micros = int((frac or "").ljust(6, "0")[:6])
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = timezone(sign * offset)
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tz
    )


def _check(reply: Any) -> Any:
    if isinstance(reply, RedisError):
        raise reply
    if reply is None:
        raise NilReply()
    return reply


def _as_str(reply: Any) -> str:
    reply = _check(reply)
    if isinstance(reply, bytes):
        return reply.decode("utf-8", "surrogateescape")
    if isinstance(reply, str):
        return reply
    if isinstance(reply, int) and not isinstance(reply, bool):
        return str(reply)
    raise ValueError(f"redis: can't parse string reply: {reply!r}")


def _as_int(reply: Any) -> int:
    reply = _check(reply)
    if isinstance(reply, int) and not isinstance(reply, bool):
        return reply
    raise ValueError(f"redis: can't parse int reply: {reply!r}")


def _as_int_text(reply: Any) -> int:
    reply = _check(reply)
    if isinstance(reply, int) and not isinstance(reply, bool):
        return reply
    return _parse_int_text(_as_str(reply))


def _as_float(reply: Any) -> float:
    reply = _check(reply)
    if isinstance(reply, float):
        return reply
    if isinstance(reply, int) and not isinstance(reply, bool):
        return float(reply)
    return _parse_float_text(_as_str(reply))


def _as_list(reply: Any) -> list:
    reply = _check(reply)
    if isinstance(reply, (list, tuple)):
        return list(reply)
    raise ValueError(f"redis: can't parse array reply: {reply!r}")


def _generic(reply: Any) -> Any:
    """Decode any reply; nested nils become None and nested errors are kept."""
    if isinstance(reply, (list, tuple)):
        return [
            item if item is None or isinstance(item, RedisError) else _generic(item)
            for item in reply
        ]
    if isinstance(reply, bytes):
        return reply.decode("utf-8", "surrogateescape")
    return reply


def _pairs(items: list) -> Iterable[tuple[Any, Any]]:
    it = iter(items)
    return zip(it, it)


# ---------------------------------------------------------------------------
# Formatting


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    return format(Decimal(repr(value)).normalize(), "f")


def _format_duration(value: timedelta) -> str:
    micros = value // timedelta(microseconds=1)
    if micros == 0:
        return "0s"
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros < 1000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        whole, rest = divmod(micros, 1000)
        frac = f".{rest:03d}".rstrip("0") if rest else ""
        return f"{sign}{whole}{frac}ms"
    secs, rest = divmod(micros, 1_000_000)
    hours, rem = divmod(secs, 3600)
    minutes, seconds = divmod(rem, 60)
    sec_text = f"{seconds}" + (f".{rest:06d}".rstrip("0") if rest else "") + "s"
    if hours:
        return f"{sign}{hours}h{minutes}m{sec_text}"
    if minutes:
        return f"{sign}{minutes}m{sec_text}"
    return f"{sign}{sec_text}"


def _format_time(value: datetime) -> str:
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset()
    if offset is None or offset == timedelta(0):
        return text + "Z"
    sign = "+" if offset > timedelta(0) else "-"
    total = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{total // 60:02d}:{total % 60:02d}"


def format_arg(value: Any) -> str:
    """Render a command argument or reply value as text."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", "surrogateescape")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, timedelta):
        return _format_duration(value)
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: format_arg(kv[0]))
        return "map[" + " ".join(f"{format_arg(k)}:{format_arg(v)}" for k, v in items) + "]"
    if isinstance(value, (set, frozenset)):
        return "map[" + " ".join(f"{k}:{{}}" for k in sorted(map(format_arg, value))) + "]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(format_arg(v) for v in value) + "]"
    return str(value)


# ---------------------------------------------------------------------------
# Commands


class Command:
    """A command with its arguments, its decoded value and its error."""

    _zero: Callable[[], Any] = staticmethod(lambda: None)

    def __init__(self, *args: Any) -> None:
        self.args: list[Any] = list(args)
        self.err: BaseException | None = None
        self.key_pos: int = 0
        self.read_timeout: float | None = None
        self.val: Any = self._zero()

    def name(self) -> str:
        """The lower-cased command name."""
        if not self.args:
            return ""
        return self.string_arg(0).lower()

    def full_name(self) -> str:
        """The command name, with its subcommand for CLUSTER and COMMAND."""
        name = self.name()
        if name in ("cluster", "command") and len(self.args) > 1:
            sub = self.args[1]
            if isinstance(sub, str):
                return f"{name} {sub}"
        return name

    def string_arg(self, pos: int) -> str:
        """The argument at ``pos`` if it is a string, otherwise ``""``."""
        if pos < 0 or pos >= len(self.args):
            return ""
        arg = self.args[pos]
        return arg if isinstance(arg, str) else ""

    def set_err(self, err: BaseException | None) -> None:
        self.err = err

    def result(self) -> Any:
        """Return the value, or raise the stored error."""
        if self.err is not None:
            raise self.err
        return self.val

    def read_reply(self, reply: Any) -> None:
        """Decode ``reply`` into the value; store and raise any error."""
        try:
            self.val = self._parse(reply)
        except (RedisError, ValueError, TypeError) as exc:
            self.err = exc
            raise
        self.err = None

    def _parse(self, reply: Any) -> Any:
        return _generic(_check(reply))

    def _display_value(self) -> Any:
        return self.val

    def __str__(self) -> str:
        text = " ".join(format_arg(arg) for arg in self.args)
        if self.err is not None:
            return f"{text}: {self.err}"
        value = self._display_value()
        if value is not None:
            return f"{text}: {format_arg(value)}"
        return text


class Cmd(Command):
    """A command whose reply may be of any type."""

    def text(self) -> str:
        if self.err is not None:
            raise self.err
        if isinstance(self.val, str):
            return self.val
        raise TypeError(f"redis: unexpected type={type(self.val).__name__} for String")

    def int(self) -> int:
        if self.err is not None:
            raise self.err
        if isinstance(self.val, int) and not isinstance(self.val, bool):
            return self.val
        if isinstance(self.val, str):
            return _parse_int_text(self.val)
        raise TypeError(f"redis: unexpected type={type(self.val).__name__} for Int")

    def float(self) -> float:
        if self.err is not None:
            raise self.err
        if isinstance(self.val, int) and not isinstance(self.val, bool):
            return float(self.val)
        if isinstance(self.val, str):
            return _parse_float_text(self.val)
        raise TypeError(f"redis: unexpected type={type(self.val).__name__} for Float64")

    def bool(self) -> bool:
        if self.err is not None:
            raise self.err
        if isinstance(self.val, int) and not isinstance(self.val, bool):
            return self.val != 0
        if isinstance(self.val, str):
            return _parse_bool_text(self.val)
        raise TypeError(f"redis: unexpected type={type(self.val).__name__} for Bool")


class SliceCmd(Command):
    """An array reply with elements of any type."""

    def _parse(self, reply: Any) -> list:
        return _generic(_as_list(reply))


class StatusCmd(Command):
    _zero = staticmethod(str)

    def _parse(self, reply: Any) -> str:
        return _as_str(reply)


class IntCmd(Command):
    _zero = staticmethod(int)

    def _parse(self, reply: Any) -> int:
        return _as_int(reply)


class IntSliceCmd(Command):
    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[int]:
        return [_as_int(item) for item in _as_list(reply)]


class DurationCmd(Command):
    """A duration reply in units of ``precision``.

    The values -2 (no such key) and -1 (no expiry) are kept as plain integers.
    """

    _zero = staticmethod(timedelta)

    def __init__(self, precision: timedelta, *args: Any) -> None:
        super().__init__(*args)
        self.precision = precision

    def _parse(self, reply: Any) -> timedelta | int:
        n = _as_int(reply)
        if n in (-2, -1):
            return n
        return n * self.precision


class TimeCmd(Command):
    """The two-element TIME reply as an aware UTC datetime."""

    def _parse(self, reply: Any) -> datetime:
        items = _as_list(reply)
        if len(items) != 2:
            raise ValueError(f"got {len(items)} elements, expected 2")
        sec = _as_int_text(items[0])
        micro = _as_int_text(items[1])
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        return epoch + timedelta(seconds=sec, microseconds=micro)


class BoolCmd(Command):
    _zero = staticmethod(bool)

    def _parse(self, reply: Any) -> bool:
        if reply is None:
            return False
        reply = _check(reply)
        if isinstance(reply, int) and not isinstance(reply, bool):
            return reply == 1
        if isinstance(reply, (str, bytes)):
            return _as_str(reply) == "OK"
        raise TypeError(f"got {type(reply).__name__}, wanted int or string")


class StringCmd(Command):
    _zero = staticmethod(str)

    def _parse(self, reply: Any) -> str:
        return _as_str(reply)

    def _value(self) -> str:
        if self.err is not None:
            raise self.err
        return self.val

    def bytes(self) -> bytes:
        return self._value().encode("utf-8", "surrogateescape")

    def bool(self) -> bool:
        return _parse_bool_text(self._value())

    def int(self) -> int:
        return _parse_int_text(self._value())

    def float(self) -> float:
        return _parse_float_text(self._value())

    def time(self) -> datetime:
        return _parse_time_text(self._value())


class FloatCmd(Command):
    _zero = staticmethod(float)

    def _parse(self, reply: Any) -> float:
        return _as_float(reply)


class FloatSliceCmd(Command):
    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[float]:
        return [0.0 if item is None else _as_float(item) for item in _as_list(reply)]


class StringSliceCmd(Command):
    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[str]:
        return ["" if item is None else _as_str(item) for item in _as_list(reply)]


class BoolSliceCmd(Command):
    _zero = staticmethod(list)

    def _parse(self, reply: Any) -> list[bool]:
        return [_as_int(item) == 1 for item in _as_list(reply)]


class StringStringMapCmd(Command):
    _zero = staticmethod(dict)

    def _parse(self, reply: Any) -> dict[str, str]:
        return {_as_str(k): _as_str(v) for k, v in _pairs(_as_list(reply))}


class StringIntMapCmd(Command):
    _zero = staticmethod(dict)

    def _parse(self, reply: Any) -> dict[str, int]:
        return {_as_str(k): _as_int(v) for k, v in _pairs(_as_list(reply))}


class StringStructMapCmd(Command):
    _zero = staticmethod(set)

    def _parse(self, reply: Any) -> set[str]:
        return {_as_str(item) for item in _as_list(reply)}


# ---------------------------------------------------------------------------
# Batch helpers


def set_cmds_err(cmds: Iterable[Command], err: BaseException) -> None:
    """Set ``err`` on every command that has no error yet."""
    for cmd in cmds:
        if cmd.err is None:
            cmd.set_err(err)


def cmds_first_err(cmds: Iterable[Command]) -> BaseException | None:
    """Return the first error among ``cmds``, or None."""
    return next((cmd.err for cmd in cmds if cmd.err is not None), None)


def cmd_first_key_pos(cmd: Command, info: Any) -> int:
    """The argument position of the command's first key, 0 if it has none."""
    if cmd.key_pos:
        return int(cmd.key_pos)
    name = cmd.name()
    if name in ("eval", "evalsha"):
        return 3 if cmd.string_arg(2) != "0" else 0
    if name == "publish":
        return 1
    if name == "memory" and cmd.string_arg(1) == "usage":
        return 2
    if info is not None:
        return int(info.first_key_pos)
    return 0