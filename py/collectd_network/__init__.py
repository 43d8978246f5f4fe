"""collectd バイナリネットワークプロトコルの UDP リスナー、デコーダ、クライアント。"""

from .api import (
    Absolute,
    Counter,
    Derive,
    Dispatcher,
    DispatcherFunc,
    Gauge,
    Identifier,
    ValueList,
)
from .auth import AuthFile, PasswordLookup, StaticPasswords
from .buffer import Buffer, BufferFullError
from .client import Client
from .codec import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_IPV4_ADDRESS,
    DEFAULT_IPV6_ADDRESS,
    DEFAULT_SERVICE,
    ParseError,
    ParseOpts,
    SecurityLevel,
    parse,
)
from .dispatch import DeliveryPool, deliver
from .server import (
    AddressError,
    InterfaceError,
    Server,
    ServerClosedError,
    ServerOptions,
    bind_socket,
    listen_and_dispatch,
)

__all__ = [
    "Absolute",
    "Counter",
    "Derive",
    "Dispatcher",
    "DispatcherFunc",
    "Gauge",
    "Identifier",
    "ValueList",
    "AuthFile",
    "PasswordLookup",
    "StaticPasswords",
    "Buffer",
    "BufferFullError",
    "Client",
    "DEFAULT_BUFFER_SIZE",
    "DEFAULT_IPV4_ADDRESS",
    "DEFAULT_IPV6_ADDRESS",
    "DEFAULT_SERVICE",
    "ParseError",
    "ParseOpts",
    "SecurityLevel",
    "parse",
    "DeliveryPool",
    "deliver",
    "AddressError",
    "InterfaceError",
    "Server",
    "ServerClosedError",
    "ServerOptions",
    "bind_socket",
    "listen_and_dispatch",
]
