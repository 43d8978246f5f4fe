"""value list を collectd プロトコルのデータグラムに詰めるエンコーダ。"""

from __future__ import annotations

import datetime
import hashlib
import hmac
import os
import struct
from typing import Any

from .api import Absolute, Counter, Derive, Gauge, ValueList
from .codec import (
    CHECKSUM_SIZE,
    DEFAULT_BUFFER_SIZE,
    DS_TYPE_ABSOLUTE,
    DS_TYPE_COUNTER,
    DS_TYPE_DERIVE,
    DS_TYPE_GAUGE,
    IV_SIZE,
    PART_HEADER,
    SIGNATURE_SIZE,
    TYPE_ENCRYPT_AES256,
    TYPE_HOST,
    TYPE_INTERVAL_HR,
    TYPE_PLUGIN,
    TYPE_PLUGIN_INSTANCE,
    TYPE_SIGN_SHA256,
    TYPE_TIME_HR,
    TYPE_TYPE,
    TYPE_TYPE_INSTANCE,
    TYPE_VALUES,
    SecurityLevel,
    aes_key,
    ofb_xor,
    timedelta_to_cdtime,
)

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


class BufferFullError(Exception):
    """value list が残り容量に収まらないときに投げる例外。"""


class Buffer:
    """データグラムのサイズ上限に達するまで value list を溜めるバッファ。

    識別子・時刻・間隔のパートは、同じバッファ内の直前の value list と
    値が変わったときだけ書き出す。
    """

    def __init__(self, size: int = DEFAULT_BUFFER_SIZE) -> None:
        self.size = size
        self.security_level = SecurityLevel.NONE
        self._username = ""
        self._password = ""
        self._data = bytearray()
        self._state: dict[int, Any] = {}

    def sign(self, username: str, password: str) -> None:
        self.security_level = SecurityLevel.SIGN
        self._username = username
        self._password = password

    def encrypt(self, username: str, password: str) -> None:
        self.security_level = SecurityLevel.ENCRYPT
        self._username = username
        self._password = password

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)

    @property
    def available(self) -> int:
        return self.size - self._overhead() - len(self._data)

    def _overhead(self) -> int:
        user_len = len(self._username.encode("utf-8"))
        if self.security_level == SecurityLevel.SIGN:
            return PART_HEADER.size + SIGNATURE_SIZE + user_len
        if self.security_level == SecurityLevel.ENCRYPT:
            return PART_HEADER.size + 2 + user_len + IV_SIZE + CHECKSUM_SIZE
        return 0

    def reset(self) -> None:
        self._data.clear()
        self._state.clear()

    def write(self, vl: ValueList) -> None:
        state = dict(self._state)
        out = bytearray()
        ident = vl.identifier
        for part_type, value in (
            (TYPE_HOST, ident.host),
            (TYPE_PLUGIN, ident.plugin),
            (TYPE_PLUGIN_INSTANCE, ident.plugin_instance),
            (TYPE_TYPE, ident.type),
            (TYPE_TYPE_INSTANCE, ident.type_instance),
        ):
            if state.get(part_type) != value:
                out += _string_part(part_type, value)
                state[part_type] = value

        if vl.time is not None:
            cdtime = timedelta_to_cdtime(vl.time - _EPOCH)
            if state.get(TYPE_TIME_HR) != cdtime:
                out += _number_part(TYPE_TIME_HR, cdtime)
                state[TYPE_TIME_HR] = cdtime
        interval = timedelta_to_cdtime(vl.interval)
        if state.get(TYPE_INTERVAL_HR) != interval:
            out += _number_part(TYPE_INTERVAL_HR, interval)
            state[TYPE_INTERVAL_HR] = interval

        out += _values_part(vl.values)

        if len(out) > self.available:
            raise BufferFullError(f"need {len(out)} bytes, {self.available} available")
        self._data += out
        self._state = state

    def to_bytes(self) -> bytes:
        payload = bytes(self._data)
        if self.security_level == SecurityLevel.SIGN:
            return self._signed(payload)
        if self.security_level == SecurityLevel.ENCRYPT:
            return self._encrypted(payload)
        return payload

    def _signed(self, payload: bytes) -> bytes:
        user = self._username.encode("utf-8")
        mac = hmac.new(self._password.encode("utf-8"), user + payload, hashlib.sha256).digest()
        header = PART_HEADER.pack(TYPE_SIGN_SHA256, PART_HEADER.size + SIGNATURE_SIZE + len(user))
        return header + mac + user + payload

    def _encrypted(self, payload: bytes) -> bytes:
        user = self._username.encode("utf-8")
        iv = os.urandom(IV_SIZE)
        cipher_text = ofb_xor(aes_key(self._password), iv, hashlib.sha1(payload).digest() + payload)
        body = struct.pack("!H", len(user)) + user + iv + cipher_text
        return PART_HEADER.pack(TYPE_ENCRYPT_AES256, PART_HEADER.size + len(body)) + body


def _string_part(part_type: int, value: str) -> bytes:
    raw = value.encode("utf-8") + b"\x00"
    return PART_HEADER.pack(part_type, PART_HEADER.size + len(raw)) + raw


def _number_part(part_type: int, value: int) -> bytes:
    return PART_HEADER.pack(part_type, PART_HEADER.size + 8) + struct.pack("!Q", value)


def _values_part(values) -> bytes:
    types = bytearray()
    data = bytearray()
    for value in values:
        if isinstance(value, Derive):
            types.append(DS_TYPE_DERIVE)
            data += struct.pack("!q", value)
        elif isinstance(value, Counter):
            types.append(DS_TYPE_COUNTER)
            data += struct.pack("!Q", value)
        elif isinstance(value, Absolute):
            types.append(DS_TYPE_ABSOLUTE)
            data += struct.pack("!Q", value)
        elif isinstance(value, (Gauge, float)):
            types.append(DS_TYPE_GAUGE)
            data += struct.pack("<d", value)
        else:
            raise TypeError(f"unsupported value type: {type(value).__name__}")
    body = struct.pack("!H", len(types)) + types + data
    return PART_HEADER.pack(TYPE_VALUES, PART_HEADER.size + len(body)) + body
