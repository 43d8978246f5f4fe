"""collectd バイナリプロトコルのデコーダ。

署名付き (HMAC-SHA256) と暗号化 (AES-256-OFB) のパートにも対応する。
"""

from __future__ import annotations

import datetime
import enum
import hashlib
import hmac
import logging
import struct
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .api import Absolute, Counter, Derive, Gauge, Identifier, Value, ValueList
from .auth import PasswordLookup

LOGGER = logging.getLogger(__name__)

DEFAULT_SERVICE = "25826"
DEFAULT_IPV4_ADDRESS = "239.192.74.66"
DEFAULT_IPV6_ADDRESS = "ff18::efc0:4a42"
# Ethernet MTU 1500B - IPv6 header 40B - UDP header 8B
DEFAULT_BUFFER_SIZE = 1452

TYPE_HOST = 0x0000
TYPE_TIME = 0x0001
TYPE_PLUGIN = 0x0002
TYPE_PLUGIN_INSTANCE = 0x0003
TYPE_TYPE = 0x0004
TYPE_TYPE_INSTANCE = 0x0005
TYPE_VALUES = 0x0006
TYPE_INTERVAL = 0x0007
TYPE_TIME_HR = 0x0008
TYPE_INTERVAL_HR = 0x0009
TYPE_MESSAGE = 0x0100
TYPE_SEVERITY = 0x0101
TYPE_SIGN_SHA256 = 0x0200
TYPE_ENCRYPT_AES256 = 0x0210

DS_TYPE_COUNTER = 0
DS_TYPE_GAUGE = 1
DS_TYPE_DERIVE = 2
DS_TYPE_ABSOLUTE = 3

PART_HEADER = struct.Struct("!HH")
NUMBER = struct.Struct("!Q")
SIGNATURE_SIZE = 32
IV_SIZE = 16
CHECKSUM_SIZE = 20
AES_BLOCK = 16
# signed and encrypted parts may wrap each other; deeper datagrams are rejected
MAX_NESTING = 8

_STRING_FIELDS = {
    TYPE_HOST: "host",
    TYPE_PLUGIN: "plugin",
    TYPE_PLUGIN_INSTANCE: "plugin_instance",
    TYPE_TYPE: "type",
    TYPE_TYPE_INSTANCE: "type_instance",
}

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


class SecurityLevel(enum.IntEnum):
    NONE = 0
    SIGN = 1
    ENCRYPT = 2

    @classmethod
    def from_name(cls, name: str) -> "SecurityLevel":
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown security level: {name!r}") from None


class ParseError(ValueError):
    """データグラムをデコードできないときに投げる例外。"""


@dataclass(frozen=True)
class ParseOpts:
    password_lookup: PasswordLookup | None = None
    security_level: SecurityLevel = SecurityLevel.NONE


def parse(data: Any, opts: ParseOpts | None = None) -> list[ValueList]:
    """1 つのデータグラムを value list のリストにデコードする。

    ``data`` は bytes-like なら何でもよく、使い回す受信バッファの view でもよい。
    戻り値はどれも ``data`` への参照を持たない。
    """

    return _parse(memoryview(data), SecurityLevel.NONE, opts or ParseOpts(), 0)


def _parse(buf: memoryview, level: SecurityLevel, opts: ParseOpts, depth: int) -> list[ValueList]:
    if depth > MAX_NESTING:
        raise ParseError(f"more than {MAX_NESTING} nested signature or encryption parts")
    value_lists: list[ValueList] = []
    state: dict[str, Any] = {
        "host": "",
        "plugin": "",
        "plugin_instance": "",
        "type": "",
        "type_instance": "",
        "time": None,
        "interval": datetime.timedelta(0),
    }

    offset = 0
    while offset < len(buf):
        if len(buf) - offset < PART_HEADER.size:
            raise ParseError(f"truncated part header at offset {offset}")
        part_type, part_len = PART_HEADER.unpack_from(buf, offset)
        if part_len < PART_HEADER.size + 1 or offset + part_len > len(buf):
            raise ParseError(f"invalid length {part_len} for part type {part_type:#06x} at offset {offset}")
        payload = buf[offset + PART_HEADER.size : offset + part_len]
        offset += part_len

        if part_type in _STRING_FIELDS:
            state[_STRING_FIELDS[part_type]] = _parse_string(payload)
        elif part_type == TYPE_TIME:
            state["time"] = _to_time(_seconds, _parse_number(payload))
        elif part_type == TYPE_TIME_HR:
            state["time"] = _to_time(cdtime_to_timedelta, _parse_number(payload))
        elif part_type == TYPE_INTERVAL:
            state["interval"] = _to_interval(_seconds, _parse_number(payload))
        elif part_type == TYPE_INTERVAL_HR:
            state["interval"] = _to_interval(cdtime_to_timedelta, _parse_number(payload))
        elif part_type == TYPE_VALUES:
            values = _parse_values(payload)
            if level < opts.security_level:
                LOGGER.debug(
                    "discarding values for %s/%s: security level %s below required %s",
                    state["host"],
                    state["plugin"],
                    level.name,
                    opts.security_level.name,
                )
                continue
            value_lists.append(
                ValueList(
                    identifier=Identifier(
                        host=state["host"],
                        plugin=state["plugin"],
                        plugin_instance=state["plugin_instance"],
                        type=state["type"],
                        type_instance=state["type_instance"],
                    ),
                    time=state["time"],
                    interval=state["interval"],
                    values=values,
                )
            )
        elif part_type == TYPE_SIGN_SHA256:
            # the signature covers everything after this part
            value_lists.extend(_parse_signed(payload, buf[offset:], opts, depth + 1))
            break
        elif part_type == TYPE_ENCRYPT_AES256:
            value_lists.extend(_parse_encrypted(payload, opts, depth + 1))
        else:
            LOGGER.debug("ignoring part of type %#06x (%d bytes)", part_type, part_len)

    return value_lists


def _parse_string(payload: memoryview) -> str:
    if payload[-1] != 0:
        raise ParseError("string part is not NUL terminated")
    try:
        return bytes(payload[:-1]).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(f"string part is not valid UTF-8: {exc}") from exc


def _parse_number(payload: memoryview) -> int:
    if len(payload) != NUMBER.size:
        raise ParseError(f"number part has {len(payload)} bytes, want {NUMBER.size}")
    return NUMBER.unpack(payload)[0]


def _to_interval(convert, value: int) -> datetime.timedelta:
    try:
        return convert(value)
    except OverflowError:
        raise ParseError(f"time value {value} out of range") from None


def _to_time(convert, value: int) -> datetime.datetime:
    try:
        return _EPOCH + _to_interval(convert, value)
    except OverflowError:
        raise ParseError(f"time value {value} out of range") from None


def _seconds(value: int) -> datetime.timedelta:
    return datetime.timedelta(seconds=value)


def _parse_values(payload: memoryview) -> list[Value]:
    if len(payload) < 2:
        raise ParseError("values part is too short")
    (count,) = struct.unpack_from("!H", payload, 0)
    want = 2 + count * 9
    if len(payload) != want:
        raise ParseError(f"values part has {len(payload)} bytes, want {want} for {count} values")

    types = payload[2 : 2 + count]
    values: list[Value] = []
    base = 2 + count
    for i, ds_type in enumerate(types):
        pos = base + i * 8
        if ds_type == DS_TYPE_GAUGE:
            values.append(Gauge(struct.unpack_from("<d", payload, pos)[0]))
        elif ds_type == DS_TYPE_DERIVE:
            values.append(Derive(struct.unpack_from("!q", payload, pos)[0]))
        elif ds_type == DS_TYPE_COUNTER:
            values.append(Counter(struct.unpack_from("!Q", payload, pos)[0]))
        elif ds_type == DS_TYPE_ABSOLUTE:
            values.append(Absolute(struct.unpack_from("!Q", payload, pos)[0]))
        else:
            raise ParseError(f"unknown data source type {ds_type}")
    return values


def _lookup(opts: ParseOpts, user: str) -> str:
    try:
        return opts.password_lookup.password(user)
    except KeyError:
        raise ParseError(f"no password for user {user!r}") from None


def _parse_signed(payload: memoryview, rest: memoryview, opts: ParseOpts, depth: int) -> list[ValueList]:
    if len(payload) <= SIGNATURE_SIZE:
        raise ParseError("signature part is too short")
    signature = bytes(payload[:SIGNATURE_SIZE])
    user_bytes = bytes(payload[SIGNATURE_SIZE:])

    if opts.password_lookup is None:
        return _parse(rest, SecurityLevel.NONE, opts, depth)

    user = user_bytes.decode("utf-8", errors="replace")
    password = _lookup(opts, user)
    mac = hmac.new(password.encode("utf-8"), user_bytes, hashlib.sha256)
    mac.update(rest)
    if not hmac.compare_digest(mac.digest(), signature):
        raise ParseError(f"signature mismatch for user {user!r}")
    return _parse(rest, SecurityLevel.SIGN, opts, depth)


def _parse_encrypted(payload: memoryview, opts: ParseOpts, depth: int) -> list[ValueList]:
    if len(payload) < 2:
        raise ParseError("encryption part is too short")
    (user_len,) = struct.unpack_from("!H", payload, 0)
    header_len = 2 + user_len + IV_SIZE
    if len(payload) < header_len + CHECKSUM_SIZE:
        raise ParseError("encryption part is too short")
    if opts.password_lookup is None:
        raise ParseError("received encrypted data but no password lookup is configured")

    user = bytes(payload[2 : 2 + user_len]).decode("utf-8", errors="replace")
    iv = bytes(payload[2 + user_len : header_len])
    password = _lookup(opts, user)

    plain = ofb_xor(aes_key(password), iv, payload[header_len:])
    checksum, data = plain[:CHECKSUM_SIZE], plain[CHECKSUM_SIZE:]
    if not hmac.compare_digest(hashlib.sha1(data).digest(), checksum):
        raise ParseError(f"checksum mismatch for user {user!r} (wrong password?)")
    return _parse(memoryview(data), SecurityLevel.ENCRYPT, opts, depth)


def aes_key(password: str) -> bytes:
    return hashlib.sha256(password.encode("utf-8")).digest()


def ofb_xor(key: bytes, iv: bytes, data: Any) -> bytes:
    """AES-256 の OFB モード。暗号化と復号は同じ呼び出しで行う。"""

    block_cipher = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    out = bytearray(data)
    block = iv
    for start in range(0, len(out), AES_BLOCK):
        block = block_cipher.update(block)
        for i, k in enumerate(block[: len(out) - start]):
            out[start + i] ^= k
    return bytes(out)


def cdtime_to_timedelta(value: int) -> datetime.timedelta:
    seconds, fraction = divmod(value, 1 << 30)
    micros = (fraction * 1_000_000 + (1 << 29)) >> 30
    return datetime.timedelta(seconds=seconds, microseconds=micros)


def timedelta_to_cdtime(value: datetime.timedelta) -> int:
    micros = (value.days * 86_400 + value.seconds) * 1_000_000 + value.microseconds
    seconds, rest = divmod(micros, 1_000_000)
    return (seconds << 30) + ((rest << 30) + 500_000) // 1_000_000
