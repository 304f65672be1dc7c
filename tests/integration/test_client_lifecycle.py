import unittest
import asyncio
import tempfile
from pathlib import Path
from unittest.mock import Mock

# add project root and tests directory into path
import sys
import os

TESTS_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(os.path.dirname(TESTS_DIR))
sys.path.insert(0, TESTS_DIR)

from fake_broker import FakeBroker, eventually
from mqttcore.client import Client, ConnectionState, connect, parse_broker_address
from mqttcore.config import ClientOptions
from mqttcore.errors import (ConnectionClosed, ConnectRejectedError, MQTTError, OperationTimeout,
                             TransportError)
from mqttcore.packets import ConnackPacket, ConnectPacket, MessageType, PublishPacket, SimplePacket, SubscribePacket
from mqttcore.store import JsonFileStoreBackend
from mqttcore.will_message import QoSLevel

class TestConnectionLifecycle(unittest.IsolatedAsyncioTestCase):
    """Integration test suite for connect and disconnect"""

    async def asyncSetUp(self):
        self.broker = FakeBroker()
        self.errors = []
        self.client = Client("lifecycle", ClientOptions(connect_timeout=0.1),
                             transport_factory=self.broker.transport_factory,
                             on_error=self.errors.append)

    async def asyncTearDown(self):
        await self.client.disconnect()

    async def test_connect_and_disconnect(self):
        session_present = await self.client.connect("broker.test", 1884)

        self.assertFalse(session_present)
        self.assertTrue(self.client.is_connected())
        self.assertEqual(self.broker.transports[0].port, 1884)

        await self.client.disconnect()
        self.assertEqual(self.client.state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.broker.packets(SimplePacket, MessageType.DISCONNECT),
                         [SimplePacket(MessageType.DISCONNECT)])
        self.assertEqual(self.broker.transports, [])

    async def test_disconnect_twice_is_noop(self):
        await self.client.connect("broker.test")
        await self.client.disconnect()
        await self.client.disconnect()

        self.assertEqual(len(self.broker.packets(SimplePacket, MessageType.DISCONNECT)), 1)

    async def test_disconnect_without_connect(self):
        await self.client.disconnect()
        self.assertEqual(self.broker.received, [])

    async def test_connect_rejected(self):
        self.broker.connect_return_code = 5

        with self.assertRaises(ConnectRejectedError) as ctx:
            await self.client.connect("broker.test")

        self.assertEqual(ctx.exception.return_code, 5)
        self.assertIn("not authorized", str(ctx.exception))
        self.assertEqual(self.client.state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.broker.transports, [])

    async def test_connack_timeout(self):
        self.broker.respond_to_connect = False

        with self.assertRaises(OperationTimeout):
            await self.client.connect("broker.test")
        self.assertEqual(self.client.state, ConnectionState.DISCONNECTED)

    async def test_disconnect_during_handshake(self):
        """Test disconnect() while waiting for CONNACK stops the connect for good"""
        self.broker.respond_to_connect = False
        self.client = Client("lifecycle", ClientOptions(connect_timeout=5),
                             transport_factory=self.broker.transport_factory)

        connecting = asyncio.create_task(self.client.connect("broker.test"))
        await eventually(lambda: len(self.broker.packets(ConnectPacket)) == 1)
        [transport] = self.broker.transports

        await self.client.disconnect()
        with self.assertRaises(ConnectionClosed):
            await connecting

        # a CONNACK sent now has nowhere to go
        transport.deliver(ConnackPacket())
        await asyncio.sleep(0.01)
        self.assertEqual(self.client.state, ConnectionState.DISCONNECTED)
        self.assertIsNone(self.client.transport)
        self.assertFalse(transport.is_open)
        self.assertEqual(self.broker.transports, [])

        # and the client can connect again
        self.broker.respond_to_connect = True
        await self.client.connect("broker.test")
        self.assertTrue(self.client.is_connected())

    async def test_unreachable_broker(self):
        self.broker.fail_open = 1

        with self.assertRaises(TransportError):
            await self.client.connect("broker.test")

        # a later attempt may succeed
        await self.client.connect("broker.test")
        self.assertTrue(self.client.is_connected())

    async def test_connect_twice_rejected(self):
        await self.client.connect("broker.test")
        with self.assertRaises(MQTTError):
            await self.client.connect("broker.test")

    async def test_operations_require_connection(self):
        with self.assertRaises(ConnectionClosed):
            await self.client.publish("a", b"x")
        with self.assertRaises(ConnectionClosed):
            await self.client.subscribe([("a", 0)], Mock())
        with self.assertRaises(ConnectionClosed):
            await self.client.unsubscribe("a")

    async def test_disconnect_fails_waiting_operations(self):
        """Test pending publishes and subscribes end with ConnectionClosed on disconnect"""
        await self.client.connect("broker.test")
        self.broker.drop = {MessageType.PUBLISH, MessageType.SUBSCRIBE}

        publish = asyncio.create_task(self.client.publish("a", b"x", qos=QoSLevel.AT_LEAST_ONCE))
        subscribe = asyncio.create_task(self.client.subscribe([("b", 1)], Mock()))
        await eventually(lambda: len(self.broker.received) == 3)

        await self.client.disconnect()

        for task in (publish, subscribe):
            with self.assertRaises(ConnectionClosed):
                await task

    async def test_clean_session_discards_state_on_disconnect(self):
        await self.client.connect("broker.test")
        await self.client.subscribe([("a/#", 0)], Mock())
        await self.client.disconnect()

        self.assertEqual(self.client.session.subscriptions, {})

    async def test_async_context_manager(self):
        async with self.client as client:
            await client.connect("broker.test")
            self.assertTrue(client.is_connected())
        self.assertEqual(self.client.state, ConnectionState.DISCONNECTED)

    async def test_connection_loss_without_reconnect(self):
        await self.client.connect("broker.test")
        self.broker.connection("lifecycle").fail()

        await eventually(lambda: self.client.state == ConnectionState.DISCONNECTED)
        self.assertEqual(len(self.errors), 1)
        self.assertIsInstance(self.errors[0], TransportError)

class TestKeepAlive(unittest.IsolatedAsyncioTestCase):
    """Test suite for PINGREQ/PINGRESP supervision"""

    async def test_ping_exchange_keeps_connection(self):
        broker = FakeBroker()
        client = Client("pinger", ClientOptions(keep_alive_interval=1),
                        transport_factory=broker.transport_factory)
        await client.connect("broker.test")
        try:
            await eventually(lambda: len(broker.packets(SimplePacket, MessageType.PINGREQ)) >= 1, timeout=3)
            await asyncio.sleep(0.1)
            self.assertTrue(client.is_connected())
        finally:
            await client.disconnect()

    async def test_missing_pingresp_drops_connection(self):
        broker = FakeBroker()
        broker.respond_to_ping = False
        errors = []
        client = Client("pinger", ClientOptions(keep_alive_interval=1),
                        transport_factory=broker.transport_factory, on_error=errors.append)
        await client.connect("broker.test")

        await eventually(lambda: client.state == ConnectionState.DISCONNECTED, timeout=4)
        self.assertIsInstance(errors[0], TransportError)
        self.assertIn("PINGRESP", str(errors[0]))

class TestReconnect(unittest.IsolatedAsyncioTestCase):
    """Test suite for automatic reconnection"""

    async def asyncSetUp(self):
        self.broker = FakeBroker()
        self.errors = []

    def make_client(self, **option_values):
        option_values.setdefault("auto_reconnect", True)
        option_values.setdefault("reconnect_delay", 0.01)
        self.client = Client("roamer", ClientOptions(**option_values),
                             transport_factory=self.broker.transport_factory,
                             on_error=self.errors.append)
        return self.client

    async def asyncTearDown(self):
        await self.client.disconnect()

    async def test_reconnect_restores_subscriptions(self):
        """Test subscriptions are re-sent when the broker has no session"""
        client = self.make_client()
        await client.connect("broker.test")
        handler = Mock()
        await client.subscribe([("home/#", 1)], handler)

        self.broker.subscriptions.clear()
        self.broker.connection("roamer").fail()
        await eventually(lambda: len(self.broker.packets(SubscribePacket)) == 2)
        await eventually(lambda: client.is_connected())

        self.broker.inject("roamer", PublishPacket(topic="home/hall", payload=b"x"))
        await eventually(lambda: handler.call_count == 1)
        self.assertEqual(self.broker.packets(SubscribePacket)[1].topic_filters, [("home/#", 1)])

    async def test_reconnect_resumes_inflight_delivery(self):
        """Test a QoS 1 message outstanding at disconnect is resent with DUP and completes"""
        client = self.make_client(clean_session=False, retry_interval=60)
        await client.connect("broker.test")
        self.broker.drop = {MessageType.PUBLISH}

        publish = asyncio.create_task(client.publish("events", b"e1", qos=QoSLevel.AT_LEAST_ONCE))
        await eventually(lambda: len(self.broker.packets(PublishPacket)) == 1)

        self.broker.drop = set()
        self.broker.session_present = True
        self.broker.connection("roamer").fail()

        packet_id = await asyncio.wait_for(publish, 2)
        sent = self.broker.packets(PublishPacket)
        self.assertEqual([packet.dup for packet in sent], [False, True])
        self.assertEqual(sent[1].packet_id, packet_id)
        # broker kept the session, nothing to resubscribe
        self.assertEqual(self.broker.packets(SubscribePacket), [])

    async def test_reconnect_survives_failed_attempts(self):
        client = self.make_client()
        await client.connect("broker.test")

        self.broker.fail_open = 2
        self.broker.connection("roamer").fail()
        await eventually(lambda: client.is_connected() and len(self.broker.transports) == 1)

        self.assertEqual(self.errors, [])

    async def test_reconnect_gives_up(self):
        client = self.make_client(max_reconnect_attempts=2)
        await client.connect("broker.test")

        self.broker.fail_open = 5
        self.broker.connection("roamer").fail()
        await eventually(lambda: client.state == ConnectionState.DISCONNECTED)

        self.assertEqual(len(self.errors), 1)
        self.assertIsInstance(self.errors[0], TransportError)

    async def test_reconnect_stops_on_rejection(self):
        client = self.make_client(max_reconnect_attempts=5)
        await client.connect("broker.test")

        self.broker.connect_return_code = 4
        self.broker.connection("roamer").fail()
        await eventually(lambda: client.state == ConnectionState.DISCONNECTED)

        self.assertIsInstance(self.errors[0], ConnectRejectedError)
        self.assertEqual(len(self.broker.packets(ConnectPacket)), 2)

    async def test_operations_fail_while_reconnecting(self):
        client = self.make_client(reconnect_delay=0.5)
        await client.connect("broker.test")
        self.broker.connection("roamer").fail()
        await eventually(lambda: client.state == ConnectionState.RECONNECTING)

        with self.assertRaises(ConnectionClosed):
            await client.publish("a", b"x")

    async def test_disconnect_while_reconnecting(self):
        client = self.make_client(reconnect_delay=0.5)
        await client.connect("broker.test")
        self.broker.connection("roamer").fail()
        await eventually(lambda: client.state == ConnectionState.RECONNECTING)

        await client.disconnect()
        await asyncio.sleep(0.6)
        self.assertEqual(client.state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.broker.transports, [])

class TestPersistentSession(unittest.IsolatedAsyncioTestCase):
    """Test suite for in-flight messages surviving a client restart"""

    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "roamer.json"
        self.broker = FakeBroker()

    async def asyncTearDown(self):
        self.tmpdir.cleanup()

    def make_client(self):
        return Client("roamer", ClientOptions(clean_session=False, retry_interval=60),
                      transport_factory=self.broker.transport_factory,
                      store_backend=JsonFileStoreBackend(self.path))

    async def test_pending_delivery_survives_restart(self):
        first = self.make_client()
        await first.connect("broker.test")
        self.broker.drop = {MessageType.PUBLISH}
        with self.assertRaises(OperationTimeout):
            await first.publish("orders/1", b"created", qos=QoSLevel.EXACTLY_ONCE, timeout=0.05)
        await first.disconnect()
        self.assertTrue(self.path.exists())

        self.broker.drop = set()
        second = self.make_client()
        self.assertEqual(len(second.session.store), 1)
        await second.connect("broker.test")
        try:
            await eventually(lambda: len(second.session.store) == 0)
        finally:
            await second.disconnect()

        resent = self.broker.packets(PublishPacket)[-1]
        self.assertTrue(resent.dup)
        self.assertEqual(resent.topic, "orders/1")
        self.assertEqual(JsonFileStoreBackend(self.path).list_all(), [])

class TestModuleConnect(unittest.IsolatedAsyncioTestCase):
    """Test suite for the module level connect() helper"""

    def test_parse_broker_address(self):
        self.assertEqual(parse_broker_address("broker.test"), ("broker.test", 1883))
        self.assertEqual(parse_broker_address("broker.test:8883"), ("broker.test", 8883))
        self.assertEqual(parse_broker_address(("10.0.0.1", "1884")), ("10.0.0.1", 1884))

    async def test_connect_helper(self):
        broker = FakeBroker()
        client = await connect("broker.test:1999", "helper", transport_factory=broker.transport_factory)
        try:
            self.assertTrue(client.is_connected())
            self.assertEqual((client.host, client.port), ("broker.test", 1999))
        finally:
            await client.disconnect()

if __name__ == '__main__':
    unittest.main()
