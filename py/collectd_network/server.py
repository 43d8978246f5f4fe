"""collectd パケットを UDP で受信し、デコードしてディスパッチャへ流すサーバ。"""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import selectors
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Any

from .api import Dispatcher
from .auth import PasswordLookup
from .codec import DEFAULT_BUFFER_SIZE, ParseError, ParseOpts, SecurityLevel, parse
from .dispatch import DEFAULT_MAX_PENDING, DEFAULT_WORKERS, DeliveryPool

LOGGER = logging.getLogger(__name__)


class AddressError(ValueError):
    """待ち受けアドレスの文字列が不正。"""


class InterfaceError(OSError):
    """マルチキャスト用のインターフェース名が存在しない。"""


class ServerClosedError(OSError):
    """サーバが閉じられた後に ``serve_forever`` が投げる例外。"""


@dataclass(frozen=True)
class ServerOptions:
    # verifies signed and decrypts encrypted packets
    password_lookup: PasswordLookup | None = None
    # only used when subscribing to a multicast group
    interface: str | None = None
    # 0 means DEFAULT_BUFFER_SIZE
    buffer_size: int = 0
    security_level: SecurityLevel = SecurityLevel.NONE
    workers: int = DEFAULT_WORKERS
    # 0 means no limit on queued batches
    max_pending: int = DEFAULT_MAX_PENDING

    def effective_buffer_size(self) -> int:
        if self.buffer_size < 0:
            raise ValueError(f"buffer_size must not be negative: {self.buffer_size}")
        return self.buffer_size or DEFAULT_BUFFER_SIZE


def split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise AddressError(f"missing ']' in address {address!r}")
        host, rest = address[1:end], address[end + 1 :]
        if not rest.startswith(":"):
            raise AddressError(f"missing port in address {address!r}")
        port = rest[1:]
    else:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise AddressError(f"missing port in address {address!r}")
        if ":" in host:
            raise AddressError(f"too many colons in address {address!r}")
    if not port:
        raise AddressError(f"missing port in address {address!r}")
    return host, port


def resolve_address(address: str) -> tuple[int, Any]:
    """``host:port`` を ``(family, sockaddr)`` に解決する。ホストが空なら IPv4 のワイルドカード。"""

    host, port = split_host_port(address)
    infos = socket.getaddrinfo(
        host or "0.0.0.0",
        port,
        socket.AF_UNSPEC,
        socket.SOCK_DGRAM,
        0,
        socket.AI_PASSIVE,
    )
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def interface_index(name: str) -> int:
    try:
        return socket.if_nametoindex(name)
    except OSError as exc:
        raise InterfaceError(f"no such network interface: {name!r}") from exc


def bind_socket(address: str, interface: str | None = None) -> socket.socket:
    """データグラムソケットを bind する。``address`` がマルチキャストならグループに参加する。"""

    family, sockaddr = resolve_address(address)
    ip = ipaddress.ip_address(sockaddr[0].split("%", 1)[0])
    ifindex = interface_index(interface) if ip.is_multicast and interface else 0

    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        if ip.is_multicast:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            _join_group(sock, ip, ifindex)
        else:
            sock.bind(sockaddr)
    except BaseException:
        sock.close()
        raise
    return sock


def _join_group(sock: socket.socket, group: ipaddress.IPv4Address | ipaddress.IPv6Address, ifindex: int) -> None:
    if group.version == 4:
        any_addr = socket.inet_aton("0.0.0.0")
        if ifindex:
            # struct ip_mreqn
            mreq = struct.pack("=4s4si", group.packed, any_addr, ifindex)
        else:
            mreq = struct.pack("=4s4s", group.packed, any_addr)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
    else:
        mreq = struct.pack("=16sI", group.packed, ifindex)
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_JOIN_GROUP, mreq)


class Server:
    """1 本の受信ループと配送用ワーカープールから成る UDP サーバ。

    受信バッファは 1 つだけ確保して使い回す。バッファの中身は次の受信までしか
    有効でないため、デコーダは必要なデータをコピーして返す。
    """

    def __init__(
        self,
        address: str,
        dispatcher: Dispatcher,
        options: ServerOptions | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.options = options or ServerOptions()
        self._logger = logger or LOGGER
        buffer_size = self.options.effective_buffer_size()

        self._sock = bind_socket(address, self.options.interface)
        # everything opened here is closed again if a later step fails
        with contextlib.ExitStack() as cleanup:
            cleanup.callback(self._sock.close)
            self.address = self._sock.getsockname()
            self._buffer = bytearray(buffer_size)
            self._parse_opts = ParseOpts(
                password_lookup=self.options.password_lookup,
                security_level=self.options.security_level,
            )
            self._wakeup_r, self._wakeup_w = socket.socketpair()
            cleanup.callback(self._wakeup_r.close)
            cleanup.callback(self._wakeup_w.close)
            self._selector = selectors.DefaultSelector()
            cleanup.callback(self._selector.close)
            self._selector.register(self._sock, selectors.EVENT_READ)
            self._selector.register(self._wakeup_r, selectors.EVENT_READ)
            self._pool = DeliveryPool(
                dispatcher,
                workers=self.options.workers,
                max_pending=self.options.max_pending,
                logger=self._logger,
            )
            cleanup.pop_all()

        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._serving = False
        self._released = False

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def serve_forever(self) -> None:
        """ソケットが失敗するか ``close`` が呼ばれるまで受信とディスパッチを続ける。

        正常には戻らず必ず例外で抜ける。``close`` の後は ``ServerClosedError``、
        受信に失敗したときはソケットの ``OSError`` を投げる。
        """

        with self._lock:
            if self._closed.is_set():
                raise ServerClosedError("server is closed")
            if self._serving:
                raise RuntimeError("serve_forever is already running")
            self._serving = True

        try:
            while True:
                nbytes, addr = self._read()
                self._handle(nbytes, addr)
        finally:
            self._closed.set()
            self._release()

    def _read(self) -> tuple[int, Any]:
        while True:
            ready = {key.fileobj for key, _ in self._selector.select()}
            if self._wakeup_r in ready or self._closed.is_set():
                raise ServerClosedError("server closed while waiting for data")
            if self._sock in ready:
                return self._sock.recvfrom_into(self._buffer)

    def _handle(self, nbytes: int, addr: Any) -> None:
        try:
            value_lists = parse(memoryview(self._buffer)[:nbytes], self._parse_opts)
        except ParseError as exc:
            self._logger.warning("error while parsing %d byte packet from %s: %s", nbytes, addr, exc)
            return
        except Exception:
            self._logger.exception("unexpected error while parsing %d byte packet from %s", nbytes, addr)
            return

        self._logger.debug("decoded %d value lists from %s", len(value_lists), addr)
        self._pool.submit(value_lists)

    def wait_for_deliveries(self, timeout: float | None = None) -> bool:
        return self._pool.join(timeout)

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            serving = self._serving
        if serving:
            with contextlib.suppress(OSError):
                self._wakeup_w.send(b"\x00")
        else:
            self._release()

    def _release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._selector.close()
        self._sock.close()
        self._wakeup_r.close()
        self._wakeup_w.close()
        # in-flight deliveries are not awaited
        self._pool.shutdown(wait=False)

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def listen_and_dispatch(
    address: str,
    dispatcher: Dispatcher,
    options: ServerOptions | None = None,
    *,
    logger: logging.Logger | None = None,
) -> None:
    """``address`` で待ち受け、デコードした value list をすべてディスパッチする。

    ソケットが使えなくなるまでブロックし、そのエラーを投げる。呼び出し側には
    ソケットを閉じる手段が渡らないので、別スレッドから止めたい場合は
    :class:`Server` を直接作り、``serve_forever`` を動かしているスレッドとは
    別のスレッドから ``Server.close`` を呼ぶ。``serve_forever`` はすぐに
    ``ServerClosedError`` を投げ、ソケットは解放される。
    """

    logger = logger or LOGGER
    with Server(address, dispatcher, options, logger=logger) as server:
        logger.info("collectd listener bound to %s (buffer %d bytes)", server.address, server.buffer_size)
        server.serve_forever()
