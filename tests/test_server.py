import datetime
import selectors
import socket
import sys
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "py"))

from collectd_network import (
    AddressError,
    Buffer,
    Client,
    Gauge,
    Identifier,
    InterfaceError,
    SecurityLevel,
    Server,
    ServerClosedError,
    ServerOptions,
    StaticPasswords,
    ValueList,
    bind_socket,
    listen_and_dispatch,
    parse,
)
from collectd_network.codec import DEFAULT_BUFFER_SIZE


def make_value_list(name: str) -> ValueList:
    return ValueList(
        identifier=Identifier(host="web-1", plugin="interface", plugin_instance="eth0", type="if_octets", type_instance=name),
        time=datetime.datetime(2024, 5, 1, tzinfo=datetime.timezone.utc),
        interval=datetime.timedelta(seconds=10),
        values=[Gauge(1.0)],
    )


class RecordingDispatcher:
    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.received: list[ValueList] = []
        self.attempts: list[str] = []
        self._fail_on = fail_on or set()
        self._cond = threading.Condition()

    def dispatch(self, value_list: ValueList) -> None:
        name = value_list.identifier.type_instance
        with self._cond:
            self.attempts.append(name)
            self._cond.notify_all()
        if name in self._fail_on:
            raise RuntimeError(f"sink rejected {name}")
        with self._cond:
            self.received.append(value_list)
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: float = 3.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.attempts) >= count, timeout)

    def names(self) -> list[str]:
        with self._cond:
            return [vl.identifier.type_instance for vl in self.received]


class ServerTestCase(unittest.TestCase):
    def _start(self, dispatcher, options: ServerOptions | None = None) -> tuple[Server, threading.Thread, dict]:
        server = Server("127.0.0.1:0", dispatcher, options)
        outcome: dict = {}

        def target() -> None:
            try:
                server.serve_forever()
            except BaseException as exc:  # noqa: BLE001 - recorded for assertions
                outcome["error"] = exc

        thread = threading.Thread(target=target, daemon=True)
        thread.start()
        self.addCleanup(thread.join, 2.0)
        self.addCleanup(server.close)
        return server, thread, outcome

    @staticmethod
    def _address(server: Server) -> str:
        host, port = server.address[:2]
        return f"{host}:{port}"

    @staticmethod
    def _send(server: Server, datagram: bytes) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            sender.sendto(datagram, server.address)


class DispatchLoopTest(ServerTestCase):
    def test_batch_is_delivered_in_order(self) -> None:
        dispatcher = RecordingDispatcher()
        server, _, _ = self._start(dispatcher)

        with Client(self._address(server)) as client:
            for name in ("rx", "tx", "errors"):
                client.write(make_value_list(name))

        self.assertTrue(dispatcher.wait_for(3))
        self.assertEqual(dispatcher.names(), ["rx", "tx", "errors"])

    def test_corrupt_datagram_does_not_stop_the_loop(self) -> None:
        dispatcher = RecordingDispatcher()
        server, thread, _ = self._start(dispatcher)

        buf = Buffer()
        buf.write(make_value_list("good"))
        valid = buf.to_bytes()

        with self.assertLogs("collectd_network.server", level="WARNING") as logs:
            self._send(server, valid[:-5])
            self._send(server, valid)
            self.assertTrue(dispatcher.wait_for(1))

        self.assertEqual(dispatcher.names(), ["good"])
        self.assertTrue(thread.is_alive())
        self.assertTrue(any("error while parsing" in line for line in logs.output))

    def test_failing_record_does_not_block_the_rest_of_the_batch(self) -> None:
        dispatcher = RecordingDispatcher(fail_on={"second"})
        server, _, _ = self._start(dispatcher)

        buf = Buffer()
        for name in ("first", "second", "third"):
            buf.write(make_value_list(name))

        with self.assertLogs("collectd_network.server", level="ERROR") as logs:
            self._send(server, buf.to_bytes())
            self.assertTrue(dispatcher.wait_for(3))
            self.assertTrue(server.wait_for_deliveries(2.0))

        self.assertEqual(dispatcher.attempts, ["first", "second", "third"])
        self.assertEqual(dispatcher.names(), ["first", "third"])
        self.assertTrue(any("2/3" in line for line in logs.output))

    def test_close_unblocks_pending_read(self) -> None:
        server, thread, outcome = self._start(RecordingDispatcher())

        server.close()
        thread.join(2.0)

        self.assertFalse(thread.is_alive())
        self.assertIsInstance(outcome.get("error"), ServerClosedError)
        self.assertTrue(server.closed)

    def test_serve_after_close_raises(self) -> None:
        server = Server("127.0.0.1:0", RecordingDispatcher())
        server.close()
        with self.assertRaises(ServerClosedError):
            server.serve_forever()

    def test_signing_requirement_drops_unsigned_packets(self) -> None:
        dispatcher = RecordingDispatcher()
        options = ServerOptions(
            password_lookup=StaticPasswords({"collector": "hunter2"}),
            security_level=SecurityLevel.SIGN,
        )
        server, _, _ = self._start(dispatcher, options)

        unsigned = Buffer()
        unsigned.write(make_value_list("unsigned"))
        self._send(server, unsigned.to_bytes())

        with Client(
            self._address(server),
            security_level=SecurityLevel.SIGN,
            username="collector",
            password="hunter2",
        ) as client:
            client.write(make_value_list("signed"))

        self.assertTrue(dispatcher.wait_for(1))
        self.assertTrue(server.wait_for_deliveries(2.0))
        self.assertEqual(dispatcher.names(), ["signed"])


class ServerOptionsTest(ServerTestCase):
    def test_zero_buffer_size_uses_default(self) -> None:
        with Server("127.0.0.1:0", RecordingDispatcher(), ServerOptions(buffer_size=0)) as server:
            self.assertEqual(server.buffer_size, DEFAULT_BUFFER_SIZE)

    def test_explicit_buffer_size_is_used(self) -> None:
        with Server("127.0.0.1:0", RecordingDispatcher(), ServerOptions(buffer_size=512)) as server:
            self.assertEqual(server.buffer_size, 512)

    def test_negative_buffer_size_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Server("127.0.0.1:0", RecordingDispatcher(), ServerOptions(buffer_size=-1))

    def test_interface_is_ignored_for_unicast(self) -> None:
        options = ServerOptions(interface="no-such-iface0")
        with Server("127.0.0.1:0", RecordingDispatcher(), options) as server:
            self.assertEqual(server.address[0], "127.0.0.1")


class ServerSetupTest(unittest.TestCase):
    def test_failed_setup_closes_everything_it_opened(self) -> None:
        opened: list = []
        real_bind = bind_socket
        real_socketpair = socket.socketpair
        real_selector = selectors.DefaultSelector

        def record(factory):
            def wrapper(*args):
                result = factory(*args)
                opened.extend(result if isinstance(result, tuple) else [result])
                return result

            return wrapper

        with patch("collectd_network.server.bind_socket", side_effect=record(real_bind)), patch(
            "collectd_network.server.socket.socketpair", side_effect=record(real_socketpair)
        ), patch("collectd_network.server.selectors.DefaultSelector", side_effect=record(real_selector)), patch(
            "collectd_network.server.DeliveryPool", side_effect=RuntimeError("cannot start workers")
        ):
            with self.assertRaises(RuntimeError):
                Server("127.0.0.1:0", RecordingDispatcher())

        udp, wakeup_r, wakeup_w, selector = opened
        for sock in (udp, wakeup_r, wakeup_w):
            self.assertEqual(sock.fileno(), -1)
        self.assertIsNone(selector.get_map())


class ClientTest(unittest.TestCase):
    def test_full_buffer_is_flushed_automatically(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as receiver:
            receiver.bind(("127.0.0.1", 0))
            receiver.settimeout(2.0)
            port = receiver.getsockname()[1]

            with Client(f"127.0.0.1:{port}", buffer_size=200) as client:
                for i in range(10):
                    client.write(make_value_list(f"queue-{i}"))

            names: list[str] = []
            datagrams = 0
            while len(names) < 10:
                data, _ = receiver.recvfrom(DEFAULT_BUFFER_SIZE)
                datagrams += 1
                self.assertLessEqual(len(data), 200)
                names.extend(vl.identifier.type_instance for vl in parse(data))

        self.assertGreater(datagrams, 1)
        self.assertEqual(names, [f"queue-{i}" for i in range(10)])


class SocketBinderTest(unittest.TestCase):
    def test_malformed_addresses_are_rejected(self) -> None:
        for address in ("127.0.0.1", "[::1", "[::1]", "::1:25826", "127.0.0.1:"):
            with self.subTest(address=address):
                with self.assertRaises(AddressError):
                    bind_socket(address)

    def test_unknown_multicast_interface_is_rejected(self) -> None:
        with self.assertRaises(InterfaceError):
            bind_socket("239.192.74.66:0", "no-such-iface0")

    def test_multicast_group_is_joined_on_default_interface(self) -> None:
        try:
            sock = bind_socket("239.192.74.66:0")
        except OSError as exc:
            self.skipTest(f"multicast not available here: {exc}")
        try:
            self.assertEqual(sock.getsockname()[0], "239.192.74.66")
        finally:
            sock.close()

    def test_bind_failure_is_propagated(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as taken:
            taken.bind(("127.0.0.1", 0))
            port = taken.getsockname()[1]
            with self.assertRaises(OSError):
                listen_and_dispatch(f"127.0.0.1:{port}", RecordingDispatcher())


if __name__ == "__main__":
    unittest.main()
