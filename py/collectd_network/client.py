"""collectd リスナーへ value list を送る UDP クライアント。"""

from __future__ import annotations

import logging
import socket

from .api import ValueList
from .buffer import Buffer, BufferFullError
from .codec import DEFAULT_BUFFER_SIZE, SecurityLevel
from .server import resolve_address

LOGGER = logging.getLogger(__name__)


class Client:
    def __init__(
        self,
        address: str,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        security_level: SecurityLevel = SecurityLevel.NONE,
        username: str = "",
        password: str = "",
    ) -> None:
        family, self.address = resolve_address(address)
        self._buffer = Buffer(buffer_size)
        if security_level == SecurityLevel.SIGN:
            self._buffer.sign(username, password)
        elif security_level == SecurityLevel.ENCRYPT:
            self._buffer.encrypt(username, password)
        self._sock = socket.socket(family, socket.SOCK_DGRAM)

    def write(self, vl: ValueList) -> None:
        """``vl`` をバッファに積む。満杯なら溜まっているデータグラムを先に送る。"""

        try:
            self._buffer.write(vl)
            return
        except BufferFullError:
            if not self._buffer:
                raise
        self.flush()
        self._buffer.write(vl)

    def flush(self) -> int:
        if not self._buffer:
            return 0
        datagram = self._buffer.to_bytes()
        self._buffer.reset()
        sent = self._sock.sendto(datagram, self.address)
        LOGGER.debug("sent %d byte datagram to %s", sent, self.address)
        return sent

    def close(self) -> None:
        try:
            self.flush()
        finally:
            self._sock.close()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
