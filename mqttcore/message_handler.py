"""Receiver side of the QoS protocol and handler dispatch.

Inbound PUBLISH packets are fanned out to every matching subscription. Each
subscription owns a FIFO queue drained by its own worker task, so one slow
handler never holds up the receive loop or other subscriptions, while
messages for one subscription keep their arrival order. Plain callables run
on a thread pool; coroutine functions are awaited.

PUBACK and PUBREC go out only once every matching handler has returned, so
a message still queued when the connection is torn down is never
acknowledged and the broker redelivers it.
"""
import asyncio
import inspect
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Dict, Optional

from .errors import ConnectionClosed, HandlerError, TransportError
from .packets import AckPacket, MessageType, PublishPacket
from .session import SessionState, Subscription
from .will_message import QoSLevel

logger = logging.getLogger(__name__)

_STOP = object()


class _Delivery:
    """Acknowledgment owed once the last matching handler has run"""

    def __init__(self, ack: AckPacket):
        self.ack = ack
        self.remaining = 0
        # retransmissions that arrived meanwhile are answered too
        self.copies = 1


class MessageHandler:
    """Main inbound message handling class"""

    def __init__(self, session: SessionState, send: Callable[[object], Awaitable[None]],
                 on_error: Optional[Callable[[BaseException], None]] = None,
                 on_release: Optional[Callable[[int], None]] = None,
                 deliver_retained: bool = True, max_workers: int = 4):
        self.session = session
        self.send = send
        self.on_error = on_error
        self.on_release = on_release
        self.deliver_retained = deliver_retained
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._queues: Dict[Subscription, asyncio.Queue] = {}
        self._workers: Dict[Subscription, asyncio.Task] = {}
        self._undelivered: Dict[int, _Delivery] = {}

    async def handle_publish(self, packet: PublishPacket) -> None:
        """Dispatch an inbound PUBLISH; acknowledge it after delivery according to its QoS"""
        if packet.qos == QoSLevel.AT_MOST_ONCE:
            self.dispatch(packet)
            return

        if packet.qos == QoSLevel.EXACTLY_ONCE:
            pending = self._undelivered.get(packet.packet_id)
            if pending is not None:
                logger.debug(f"QoS 2 packet {packet.packet_id} retransmitted before delivery finished")
                pending.copies += 1
                return
            if not self.session.mark_received(packet.packet_id):
                logger.debug(f"Duplicate QoS 2 packet {packet.packet_id} on {packet.topic}, not redelivered")
                await self.send(AckPacket(MessageType.PUBREC, packet.packet_id))
                return
            delivery = _Delivery(AckPacket(MessageType.PUBREC, packet.packet_id))
        else:
            delivery = _Delivery(AckPacket(MessageType.PUBACK, packet.packet_id))

        if self.dispatch(packet, delivery) == 0:
            await self.send(delivery.ack)
        elif packet.qos == QoSLevel.EXACTLY_ONCE:
            self._undelivered[packet.packet_id] = delivery

    async def handle_pubrel(self, packet_id: int) -> None:
        """Handle PUBREL: finish an inbound QoS 2 exchange"""
        if self.session.release(packet_id) and self.on_release is not None:
            try:
                self.on_release(packet_id)
            except Exception as e:
                logger.exception(f"Release callback failed for packet {packet_id}")
                self._report(e)
        await self.send(AckPacket(MessageType.PUBCOMP, packet_id))

    def dispatch(self, packet: PublishPacket, delivery: Optional[_Delivery] = None) -> int:
        """Queue the message for every matching subscription; return the match count"""
        if packet.retain and not self.deliver_retained:
            logger.debug(f"Skipping retained message on {packet.topic}")
            return 0

        # a handler thread may have removed a subscription since the snapshot
        matched = [(subscription, qos) for subscription, qos in self.session.match(packet.topic, packet.qos)
                   if subscription.active]
        if not matched:
            logger.debug(f"No subscription matches {packet.topic}")
            return 0
        if delivery is not None:
            delivery.remaining = len(matched)
        for subscription, qos in matched:
            self._queue_for(subscription).put_nowait(
                (packet.topic, qos, packet.payload, packet.retain, delivery))
        return len(matched)

    def _queue_for(self, subscription: Subscription) -> asyncio.Queue:
        queue = self._queues.get(subscription)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[subscription] = queue
            self._workers[subscription] = asyncio.create_task(self._run_worker(subscription, queue))
        return queue

    async def _run_worker(self, subscription: Subscription, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    self._workers.pop(subscription, None)
                    return
                *message, delivery = item
                await self._invoke(subscription, *message)
                if delivery is not None:
                    await self._delivered(delivery)
            finally:
                queue.task_done()

    async def _delivered(self, delivery: _Delivery) -> None:
        delivery.remaining -= 1
        if delivery.remaining > 0:
            return
        packet_id = delivery.ack.packet_id
        if self._undelivered.get(packet_id) is delivery:
            del self._undelivered[packet_id]
        try:
            for _ in range(delivery.copies):
                await self.send(delivery.ack)
        except (TransportError, ConnectionClosed) as e:
            # the broker retransmits after reconnecting
            logger.debug(f"Could not acknowledge packet {packet_id}: {e}")

    async def _invoke(self, subscription: Subscription, topic: str, qos: QoSLevel,
                      payload: bytes, retain: bool) -> None:
        handler = subscription.handler
        try:
            if inspect.iscoroutinefunction(handler):
                await handler(topic, qos, payload, retain)
            else:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=self.max_workers, thread_name_prefix="mqtt-handler")
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(self._executor, handler, topic, qos, payload, retain)
        except Exception as e:
            error = HandlerError(subscription.pattern, topic)
            error.__cause__ = e
            logger.exception(str(error))
            self._report(error)

    def _report(self, error: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            logger.exception("Error observer raised")

    def retire(self, subscription: Subscription) -> None:
        """Let a removed subscription's worker finish queued messages and exit"""
        queue = self._queues.pop(subscription, None)
        if queue is not None:
            queue.put_nowait(_STOP)

    async def join(self) -> None:
        """Wait until every queued message has been handed to its handler"""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        """Stop all workers and the handler thread pool.

        Queued messages are dropped unacknowledged. QoS 2 identifiers whose
        delivery never finished are forgotten so a redelivery is accepted.
        """
        workers = list(self._workers.values())
        self._queues.clear()
        self._workers.clear()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        for packet_id in self._undelivered:
            logger.debug(f"QoS 2 packet {packet_id} dropped before delivery")
            self.session.release(packet_id)
        self._undelivered.clear()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
