"""Sender side of the QoS delivery protocol.

QoS 0 messages are fire-and-forget. QoS 1 waits for PUBACK; QoS 2 walks
PUBLISH -> PUBREC -> PUBREL -> PUBCOMP. Every QoS 1/2 message is tracked in
the session's ``MessageStore`` until its handshake finishes, and a retry task
resends the outstanding step until its retry budget is spent.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .errors import ConnectionClosed, DeliveryFailure, OperationTimeout, TransportError
from .packets import AckPacket, MessageType, PublishPacket
from .store import DeliveryState, MessageStore, PendingDelivery
from .will_message import QoSLevel

logger = logging.getLogger(__name__)

SendCallback = Callable[[object], Awaitable[None]]


def _consume_exception(future: asyncio.Future) -> None:
    # Nobody may be waiting any more (caller timed out); mark as retrieved.
    if not future.cancelled():
        future.exception()


class PublishHandler:
    def __init__(self, store: MessageStore, send: SendCallback,
                 retry_interval: float = 5.0, max_retries: int = 3,
                 on_failure: Optional[Callable[[DeliveryFailure], None]] = None):
        self.store = store
        self.send = send
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self.on_failure = on_failure
        self._waiters: Dict[int, asyncio.Future] = {}
        self._retry_tasks: Dict[int, asyncio.Task] = {}

    async def publish_message(self, topic: str, payload: bytes, qos: QoSLevel = QoSLevel.AT_MOST_ONCE,
                              retain: bool = False) -> Tuple[Optional[int], Optional[asyncio.Future]]:
        """Send a message and start its QoS handshake.

        Returns the packet identifier and a future that resolves once the
        message reaches its delivery guarantee; both are None for QoS 0.
        """
        qos = QoSLevel(qos)
        if qos == QoSLevel.AT_MOST_ONCE:
            await self.send(PublishPacket(topic=topic, payload=payload, qos=qos, retain=retain))
            return None, None

        packet_id = self.store.next_packet_id()
        entry = self.store.track(PendingDelivery(
            packet_id=packet_id,
            topic=topic,
            payload=payload,
            qos=qos,
            retain=retain,
        ))
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._waiters[packet_id] = future

        try:
            await self.send(self._publish_packet(entry, dup=False))
        except (TransportError, ConnectionClosed) as e:
            # Still tracked: the retry task or a reconnect resume will resend it.
            logger.warning(f"Initial send of packet {packet_id} failed: {e}")

        self._restart_retry(packet_id)
        return packet_id, future

    async def wait_for_delivery(self, future: asyncio.Future, timeout: Optional[float] = None) -> None:
        """Wait for a delivery future without tearing down its tracking on timeout"""
        try:
            await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(f"Delivery not confirmed within {timeout} seconds")

    @staticmethod
    def _publish_packet(entry: PendingDelivery, dup: bool) -> PublishPacket:
        return PublishPacket(
            topic=entry.topic,
            payload=entry.payload,
            qos=entry.qos,
            retain=entry.retain,
            dup=dup,
            packet_id=entry.packet_id,
        )

    def _restart_retry(self, packet_id: int) -> None:
        task = self._retry_tasks.pop(packet_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._retry_tasks[packet_id] = asyncio.create_task(self._handle_qos_retry(packet_id))

    def _stop_retry(self, packet_id: int) -> None:
        task = self._retry_tasks.pop(packet_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _retransmit(self, entry: PendingDelivery) -> None:
        if entry.state == DeliveryState.RECEIVED:
            await self.send(AckPacket(MessageType.PUBREL, entry.packet_id))
        else:
            await self.send(self._publish_packet(entry, dup=True))

    async def _handle_qos_retry(self, packet_id: int) -> None:
        """Resend the outstanding step of one delivery until acknowledged or out of retries"""
        while True:
            await asyncio.sleep(self.retry_interval)

            entry = self.store.get(packet_id)
            if entry is None:
                return

            if entry.retry_count >= self.max_retries:
                self._abandon(packet_id)
                return

            entry.retry_count += 1
            entry.last_sent = time.time()
            self.store.update(entry)
            logger.warning(
                f"No acknowledgment for packet {packet_id} in state {entry.state.value}, "
                f"retry {entry.retry_count}/{self.max_retries}"
            )
            try:
                await self._retransmit(entry)
            except (TransportError, ConnectionClosed) as e:
                logger.warning(f"Retransmission of packet {packet_id} failed: {e}")

    def _abandon(self, packet_id: int) -> None:
        self._retry_tasks.pop(packet_id, None)
        self.store.retire(packet_id)
        failure = DeliveryFailure(packet_id)
        logger.error(str(failure))
        self._resolve(packet_id, failure)
        if self.on_failure is not None:
            self.on_failure(failure)

    def _resolve(self, packet_id: int, error: Optional[BaseException] = None) -> None:
        future = self._waiters.pop(packet_id, None)
        if future is None or future.done():
            return
        if error is None:
            future.set_result(packet_id)
        else:
            future.set_exception(error)

    async def handle_puback(self, packet_id: int) -> None:
        """Handle PUBACK packet for QoS 1"""
        entry = self.store.get(packet_id)
        if entry is None or entry.qos != QoSLevel.AT_LEAST_ONCE:
            logger.debug(f"Ignoring PUBACK for unknown packet {packet_id}")
            return
        entry.state = DeliveryState.ACKNOWLEDGED
        self.store.retire(packet_id)
        self._stop_retry(packet_id)
        self._resolve(packet_id)

    async def handle_pubrec(self, packet_id: int) -> None:
        """Handle PUBREC packet for QoS 2 - first phase"""
        entry = self.store.get(packet_id)
        if entry is None:
            # Let the broker finish its side of a handshake we no longer track.
            logger.debug(f"PUBREC for unknown packet {packet_id}, releasing")
            await self.send(AckPacket(MessageType.PUBREL, packet_id))
            return
        if entry.qos != QoSLevel.EXACTLY_ONCE:
            logger.debug(f"Ignoring PUBREC for QoS {int(entry.qos)} packet {packet_id}")
            return

        if entry.state == DeliveryState.SENT:
            entry.state = DeliveryState.RECEIVED
            entry.retry_count = 0
            entry.last_sent = time.time()
            self.store.update(entry)
            self._restart_retry(packet_id)
        await self.send(AckPacket(MessageType.PUBREL, packet_id))

    async def handle_pubcomp(self, packet_id: int) -> None:
        """Handle PUBCOMP packet for QoS 2 - final phase"""
        entry = self.store.get(packet_id)
        if entry is None or entry.qos != QoSLevel.EXACTLY_ONCE:
            logger.debug(f"Ignoring PUBCOMP for unknown packet {packet_id}")
            return
        entry.state = DeliveryState.COMPLETED
        self.store.retire(packet_id)
        self._stop_retry(packet_id)
        self._resolve(packet_id)

    async def resume(self) -> None:
        """Retransmit every stored delivery after a (re)connect"""
        for entry in self.store.pending():
            entry.retry_count = 0
            entry.last_sent = time.time()
            self.store.update(entry)
            logger.info(f"Resuming packet {entry.packet_id} in state {entry.state.value}")
            await self._retransmit(entry)
            self._restart_retry(entry.packet_id)

    def pause(self) -> None:
        """Stop retry timers while the connection is down; tracking stays"""
        for task in self._retry_tasks.values():
            task.cancel()
        self._retry_tasks.clear()

    def abandon_all(self, error: BaseException) -> None:
        """Fail every outstanding wait, e.g. on disconnect"""
        self.pause()
        for packet_id in list(self._waiters):
            self._resolve(packet_id, error)
