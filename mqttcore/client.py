"""Client engine: connection lifecycle, subscribe/publish and the receive loop.

A ``Client`` owns one ``Transport`` at a time, a ``SessionState`` that
outlives individual connections, a ``PublishHandler`` for the sender side of
the QoS handshakes and a ``MessageHandler`` for the receiver side.
Everything runs on a single asyncio event loop; the receive loop is one task
per connection and never waits on message handlers.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .config import ClientOptions
from .connection import StreamTransport, Transport
from .errors import (ConnectionClosed, ConnectRejectedError, MQTTError, OperationTimeout,
                     ProtocolError, PublishError, SubscriptionError, TransportError)
from .message_handler import MessageHandler
from .packets import (SUBACK_FAILURE, AckPacket, ConnackPacket, ConnectPacket, MessageType,
                      PublishPacket, SimplePacket, SubackPacket, SubscribePacket,
                      UnsubscribePacket, decode_packet)
from .publish import PublishHandler
from .session import Handler, SessionState
from .store import MessageStore, StoreBackend
from .topic import validate_topic_filter, validate_topic_name
from .will_message import QoSLevel

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1883

TransportFactory = Callable[[str, int], Transport]

class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    RECONNECTING = "reconnecting"


def parse_broker_address(address: Union[str, Tuple[str, int]]) -> Tuple[str, int]:
    """Accept ``"host"``, ``"host:port"`` or a ``(host, port)`` tuple"""
    if isinstance(address, tuple):
        host, port = address
        return host, int(port)
    host, sep, port = address.rpartition(':')
    if not sep or not port.isdigit():
        return address, DEFAULT_PORT
    return host, int(port)


class Client:
    def __init__(self, client_id: str, options: Optional[ClientOptions] = None,
                 transport_factory: Optional[TransportFactory] = None,
                 store_backend: Optional[StoreBackend] = None,
                 on_error: Optional[Callable[[BaseException], None]] = None,
                 on_release: Optional[Callable[[int], None]] = None):
        self.client_id = client_id
        self.options = options or ClientOptions()
        self.transport_factory = transport_factory or self._default_transport
        self.on_error = on_error
        self.session = SessionState(
            client_id=client_id,
            clean_session=self.options.clean_session,
            store=MessageStore(store_backend),
            exclude_reserved=self.options.exclude_reserved_topics,
        )
        self.publish_handler = PublishHandler(
            self.session.store,
            self._send_packet,
            retry_interval=self.options.retry_interval,
            max_retries=self.options.max_retry_count,
            on_failure=self._report,
        )
        self.message_handler = MessageHandler(
            self.session,
            self._send_packet,
            on_error=self._report,
            on_release=on_release,
            deliver_retained=self.options.deliver_retained,
            max_workers=self.options.handler_workers,
        )
        self.state = ConnectionState.DISCONNECTED
        self.transport: Optional[Transport] = None
        self.host: Optional[str] = None
        self.port: int = DEFAULT_PORT
        self._receive_task: Optional[asyncio.Task] = None
        self._keep_alive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._handshake: Optional[asyncio.Task] = None
        self._pending_acks: Dict[int, asyncio.Future] = {}
        self._ping_outstanding = False

    def __repr__(self) -> str:
        return f"Client({self.client_id!r}, state={self.state.value})"

    def _default_transport(self, host: str, port: int) -> Transport:
        return StreamTransport(host, port, timeout=self.options.connect_timeout)

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.info(f"{self.client_id}: {self.state.value} -> {state.value}")
            self.state = state

    def _report(self, error: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            logger.exception("Error observer raised")

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.options.operation_timeout

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def __aenter__(self) -> 'Client':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # --- connection lifecycle ---

    async def connect(self, host: str, port: int = DEFAULT_PORT) -> bool:
        """Open the transport and perform the CONNECT/CONNACK handshake.

        Returns the broker's session-present flag.
        """
        if self.state != ConnectionState.DISCONNECTED:
            raise MQTTError(f"Cannot connect while {self.state.value}")

        self.host, self.port = host, port
        if self.options.clean_session:
            self.session.reset()

        self._set_state(ConnectionState.CONNECTING)
        self._handshake = asyncio.create_task(self._open_session())
        try:
            session_present = await self._handshake
        except asyncio.CancelledError:
            if self.state == ConnectionState.CONNECTING:
                # the caller was cancelled, not the handshake
                self._handshake.cancel()
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            raise ConnectionClosed("Disconnected while connecting") from None
        except BaseException:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        finally:
            self._handshake = None

        if self.state != ConnectionState.CONNECTING:
            # disconnect() ran after the CONNACK arrived
            await self._close_transport()
            raise ConnectionClosed("Disconnected while connecting")
        self._set_state(ConnectionState.CONNECTED)
        await self._after_connect(session_present)
        return session_present

    async def _open_session(self) -> bool:
        transport = self.transport_factory(self.host, self.port)
        await transport.open()
        try:
            connect_packet = ConnectPacket(
                client_id=self.client_id,
                clean_session=self.options.clean_session,
                keep_alive=self.options.keep_alive_interval,
                username=self.options.username,
                password=self.options.password,
                will_message=self.options.will,
            )
            await transport.send(connect_packet.encode())
            frame = await asyncio.wait_for(transport.receive(), self.options.connect_timeout)
            connack = decode_packet(frame)
        except asyncio.TimeoutError:
            await transport.close()
            raise OperationTimeout(
                f"No CONNACK from {self.host}:{self.port} within {self.options.connect_timeout} seconds")
        except ConnectionClosed as e:
            await transport.close()
            raise TransportError(f"{self.host}:{self.port} closed the connection during handshake") from e
        except BaseException:
            await transport.close()
            raise

        if not isinstance(connack, ConnackPacket):
            await transport.close()
            raise ProtocolError(f"Expected CONNACK, got {type(connack).__name__}")
        if connack.return_code != 0:
            await transport.close()
            raise ConnectRejectedError(connack.return_code)

        self.transport = transport
        self._ping_outstanding = False
        logger.debug(f"{self.client_id}: CONNACK session_present={connack.session_present}")
        return connack.session_present

    async def _after_connect(self, session_present: bool) -> None:
        self._receive_task = asyncio.create_task(self._receive_loop(self.transport))
        if self.options.keep_alive_interval > 0:
            self._keep_alive_task = asyncio.create_task(self._keep_alive())
        if not self.options.clean_session:
            await self.publish_handler.resume()
        if not session_present:
            await self._restore_subscriptions()

    async def _restore_subscriptions(self) -> None:
        subscriptions = self.session.get_subscriptions()
        if not subscriptions:
            return
        topics = [(subscription.pattern, subscription.qos) for subscription in subscriptions]
        logger.info(f"{self.client_id}: restoring {len(topics)} subscription(s)")
        try:
            suback = await self._request(
                SubscribePacket(self._reserve_packet_id(), topics), self._timeout(None))
        except MQTTError as e:
            logger.warning(f"{self.client_id}: failed to restore subscriptions: {e}")
            return
        self._apply_suback(topics, suback)

    async def disconnect(self) -> None:
        """Gracefully close the connection; a no-op when already disconnected"""
        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.DISCONNECTING):
            return

        was_connected = self.state == ConnectionState.CONNECTED
        self._set_state(ConnectionState.DISCONNECTING)
        if self._handshake is not None:
            self._handshake.cancel()

        if was_connected and self.transport is not None:
            try:
                await self._send_packet(SimplePacket(MessageType.DISCONNECT))
            except (TransportError, ConnectionClosed) as e:
                logger.debug(f"{self.client_id}: could not send DISCONNECT: {e}")

        await self._teardown(ConnectionClosed("Client disconnected"))
        self._set_state(ConnectionState.DISCONNECTED)

    async def _teardown(self, error: BaseException) -> None:
        current = asyncio.current_task()
        for task in (self._receive_task, self._keep_alive_task, self._reconnect_task):
            if task is not None and task is not current:
                task.cancel()
        self._receive_task = self._keep_alive_task = self._reconnect_task = None

        await self._close_transport()
        self._fail_pending_acks(error)
        self.publish_handler.abandon_all(error)
        await self.message_handler.close()
        if self.options.clean_session:
            self.session.reset()

    async def _close_transport(self) -> None:
        transport, self.transport = self.transport, None
        if transport is not None:
            await transport.close()

    def _fail_pending_acks(self, error: BaseException) -> None:
        for future in self._pending_acks.values():
            if not future.done():
                future.set_exception(error)
        self._pending_acks.clear()

    async def _connection_lost(self, error: BaseException) -> None:
        if self.state != ConnectionState.CONNECTED:
            return
        logger.warning(f"{self.client_id}: connection lost: {error}")

        if not self.options.auto_reconnect:
            self._set_state(ConnectionState.DISCONNECTING)
            await self._teardown(ConnectionClosed(f"Connection lost: {error}"))
            self._set_state(ConnectionState.DISCONNECTED)
            self._report(error)
            return

        self._set_state(ConnectionState.RECONNECTING)
        current = asyncio.current_task()
        for task in (self._receive_task, self._keep_alive_task):
            if task is not None and task is not current:
                task.cancel()
        self._receive_task = self._keep_alive_task = None
        self.publish_handler.pause()
        self._fail_pending_acks(ConnectionClosed(f"Connection lost: {error}"))
        await self._close_transport()
        self._reconnect_task = asyncio.create_task(self._reconnect(error))

    async def _reconnect(self, last_error: BaseException) -> None:
        for attempt in range(1, self.options.max_reconnect_attempts + 1):
            await asyncio.sleep(self.options.reconnect_delay)
            if self.state != ConnectionState.RECONNECTING:
                return
            logger.info(f"{self.client_id}: reconnect attempt {attempt}/{self.options.max_reconnect_attempts}")
            try:
                session_present = await self._open_session()
            except ConnectRejectedError as e:
                last_error = e
                break
            except (TransportError, ConnectionClosed, OperationTimeout) as e:
                logger.warning(f"{self.client_id}: reconnect attempt {attempt} failed: {e}")
                last_error = e
                continue

            if self.state != ConnectionState.RECONNECTING:
                await self._close_transport()
                return
            self._reconnect_task = None
            self._set_state(ConnectionState.CONNECTED)
            if self.options.clean_session:
                # The broker dropped our in-flight state; so do we.
                self.publish_handler.abandon_all(ConnectionClosed("Session discarded on reconnect"))
                self.session.store.clear()
                self.session.pending_received.clear()
            await self._after_connect(session_present)
            return

        logger.error(f"{self.client_id}: giving up reconnecting: {last_error}")
        self._reconnect_task = None
        self._set_state(ConnectionState.DISCONNECTING)
        await self._teardown(ConnectionClosed(f"Reconnect failed: {last_error}"))
        self._set_state(ConnectionState.DISCONNECTED)
        self._report(last_error)

    async def _keep_alive(self) -> None:
        interval = self.options.keep_alive_interval
        while True:
            await asyncio.sleep(interval)
            if self._ping_outstanding:
                await self._connection_lost(TransportError(f"No PINGRESP within {interval} seconds"))
                return
            self._ping_outstanding = True
            try:
                await self._send_packet(SimplePacket(MessageType.PINGREQ))
            except (TransportError, ConnectionClosed) as e:
                await self._connection_lost(e)
                return

    # --- packet I/O ---

    async def _send_packet(self, packet) -> None:
        transport = self.transport
        if transport is None:
            raise ConnectionClosed("Not connected")
        logger.debug(f"{self.client_id} >> {packet}")
        await transport.send(packet.encode())

    async def _receive_loop(self, transport: Transport) -> None:
        try:
            while True:
                frame = await transport.receive()
                packet = decode_packet(frame)
                logger.debug(f"{self.client_id} << {packet}")
                await self._handle_packet(packet)
        except (TransportError, ConnectionClosed) as e:
            if transport is self.transport:
                await self._connection_lost(e)

    async def _handle_packet(self, packet) -> None:
        if isinstance(packet, PublishPacket):
            await self.message_handler.handle_publish(packet)
        elif isinstance(packet, AckPacket):
            if packet.packet_type == MessageType.PUBACK:
                await self.publish_handler.handle_puback(packet.packet_id)
            elif packet.packet_type == MessageType.PUBREC:
                await self.publish_handler.handle_pubrec(packet.packet_id)
            elif packet.packet_type == MessageType.PUBREL:
                await self.message_handler.handle_pubrel(packet.packet_id)
            elif packet.packet_type == MessageType.PUBCOMP:
                await self.publish_handler.handle_pubcomp(packet.packet_id)
            else:
                self._resolve_ack(packet.packet_id, packet)
        elif isinstance(packet, SubackPacket):
            self._resolve_ack(packet.packet_id, packet)
        elif isinstance(packet, SimplePacket) and packet.packet_type == MessageType.PINGRESP:
            self._ping_outstanding = False
        else:
            logger.warning(f"{self.client_id}: unexpected packet {packet}")

    def _resolve_ack(self, packet_id: int, packet) -> None:
        future = self._pending_acks.get(packet_id)
        if future is None or future.done():
            logger.debug(f"{self.client_id}: late or unknown acknowledgment for packet {packet_id}")
            return
        future.set_result(packet)

    def _reserve_packet_id(self) -> int:
        packet_id = self.session.store.next_packet_id()
        self.session.store.reserved.add(packet_id)
        return packet_id

    async def _request(self, packet, timeout: Optional[float]):
        """Send SUBSCRIBE/UNSUBSCRIBE and wait for the matching acknowledgment"""
        packet_id = packet.packet_id
        future = asyncio.get_running_loop().create_future()
        self._pending_acks[packet_id] = future
        try:
            await self._send_packet(packet)
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(f"No acknowledgment for packet {packet_id} within {timeout} seconds")
        finally:
            self._pending_acks.pop(packet_id, None)
            self.session.store.reserved.discard(packet_id)

    def _ensure_connected(self) -> None:
        if self.state != ConnectionState.CONNECTED:
            raise ConnectionClosed(f"Client is {self.state.value}")

    # --- subscriptions ---

    async def subscribe(self, topics: Sequence[Tuple[str, int]], handler: Handler,
                        timeout: Optional[float] = None) -> List[QoSLevel]:
        """Subscribe ``handler`` to each (pattern, qos) pair.

        Returns the granted QoS per topic. Raises SubscriptionError if any
        filter is malformed (nothing is sent) or refused by the broker (the
        accepted ones stay subscribed).
        """
        if not topics:
            raise SubscriptionError("No topics to subscribe to", [])

        requested: List[Tuple[str, QoSLevel]] = []
        results: List[Tuple[str, int]] = []
        for pattern, qos in topics:
            valid = validate_topic_filter(pattern) and qos in tuple(QoSLevel)
            results.append((pattern, int(qos) if valid else SUBACK_FAILURE))
            if valid:
                requested.append((pattern, QoSLevel(qos)))
        if len(requested) != len(results):
            raise SubscriptionError("Malformed topic filter or QoS", results)

        self._ensure_connected()
        for pattern, qos in requested:
            previous = self.session.remove_subscription(pattern)
            if previous is not None:
                self.message_handler.retire(previous)
            self.session.add_subscription(pattern, qos, handler)

        suback = await self._request(
            SubscribePacket(self._reserve_packet_id(), requested), self._timeout(timeout))
        results = self._apply_suback(requested, suback)

        failed = [pattern for pattern, code in results if code == SUBACK_FAILURE]
        if failed:
            raise SubscriptionError(f"Broker rejected: {', '.join(failed)}", results)
        return [QoSLevel(code) for _, code in results]

    def _apply_suback(self, requested: List[Tuple[str, QoSLevel]], suback: SubackPacket) -> List[Tuple[str, int]]:
        codes = list(suback.return_codes)
        if len(codes) < len(requested):
            logger.warning(f"{self.client_id}: SUBACK carries {len(codes)} codes for {len(requested)} topics")
            codes.extend([SUBACK_FAILURE] * (len(requested) - len(codes)))

        results = []
        for (pattern, qos), code in zip(requested, codes):
            if code == SUBACK_FAILURE or code not in tuple(QoSLevel):
                logger.warning(f"{self.client_id}: subscription to {pattern!r} rejected")
                removed = self.session.remove_subscription(pattern)
                if removed is not None:
                    self.message_handler.retire(removed)
                code = SUBACK_FAILURE
            else:
                if code != qos:
                    logger.info(f"{self.client_id}: {pattern!r} granted QoS {code} (requested {int(qos)})")
                self.session.update_granted(pattern, QoSLevel(code))
            results.append((pattern, code))
        return results

    async def unsubscribe(self, patterns: Union[str, Iterable[str]], timeout: Optional[float] = None) -> None:
        """Remove subscriptions locally right away, then confirm with the broker"""
        if isinstance(patterns, str):
            patterns = [patterns]
        patterns = list(patterns)
        self._ensure_connected()

        for pattern in patterns:
            removed = self.session.remove_subscription(pattern)
            if removed is not None:
                self.message_handler.retire(removed)

        await self._request(
            UnsubscribePacket(self._reserve_packet_id(), patterns), self._timeout(timeout))

    # --- publishing ---

    async def publish(self, topic: str, payload: Union[bytes, str, None] = b'', qos: int = 0,
                      retain: bool = False, timeout: Optional[float] = None) -> Optional[int]:
        """Publish a message and wait until its QoS guarantee is reached.

        Returns the packet identifier, or None for QoS 0.
        """
        if not validate_topic_name(topic):
            raise PublishError(f"Invalid publish topic {topic!r}")
        try:
            qos = QoSLevel(qos)
        except ValueError:
            raise PublishError(f"Invalid QoS value: {qos}. Must be 0, 1, or 2")
        if payload is None:
            payload = b''
        elif isinstance(payload, str):
            payload = payload.encode('utf-8')
        elif not isinstance(payload, (bytes, bytearray)):
            raise PublishError(f"Payload must be bytes or str, not {type(payload).__name__}")

        self._ensure_connected()
        packet_id, future = await self.publish_handler.publish_message(topic, bytes(payload), qos, retain)
        if future is None:
            return None
        await self.publish_handler.wait_for_delivery(future, self._timeout(timeout))
        return packet_id


async def connect(broker_address: Union[str, Tuple[str, int]], client_id: str,
                  options: Optional[ClientOptions] = None, **kwargs) -> Client:
    """Create a ``Client`` and connect it; extra keyword arguments go to ``Client``"""
    host, port = parse_broker_address(broker_address)
    client = Client(client_id, options, **kwargs)
    await client.connect(host, port)
    return client
