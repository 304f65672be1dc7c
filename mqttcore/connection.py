"""Transport connections: the byte-stream link between client and broker.

The client only relies on the ``Transport`` contract below. ``StreamTransport``
is the TCP implementation built on asyncio streams; tests substitute an
in-process fake.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from .errors import ConnectionClosed, ProtocolError, TransportError

logger = logging.getLogger(__name__)

MAX_REMAINING_LENGTH_BYTES = 4

class Transport(ABC):
    """Duplex frame channel to a broker"""

    @abstractmethod
    async def open(self) -> None:
        """Establish the underlying connection"""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection; safe to call more than once"""

    @abstractmethod
    async def send(self, frame: bytes) -> None:
        """Write one complete frame"""

    @abstractmethod
    async def receive(self) -> bytes:
        """Return the next complete frame.

        Raises ConnectionClosed at end of stream and TransportError on
        any other failure.
        """

    @property
    def is_open(self) -> bool:
        return False

    async def __aenter__(self) -> 'Transport':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    """Read one packet (fixed header, remaining length and body) from a stream"""
    first_byte = await reader.readexactly(1)

    length_bytes = bytearray()
    remaining_length = 0
    multiplier = 1
    while True:
        byte = (await reader.readexactly(1))[0]
        length_bytes.append(byte)
        remaining_length += (byte & 0x7F) * multiplier
        if byte & 0x80 == 0:
            break
        if len(length_bytes) >= MAX_REMAINING_LENGTH_BYTES:
            raise ProtocolError("Malformed remaining length")
        multiplier *= 128

    body = await reader.readexactly(remaining_length) if remaining_length else b''
    return bytes(first_byte + length_bytes + body)


class StreamTransport(Transport):
    """TCP transport over ``asyncio.open_connection``"""

    def __init__(self, host: str, port: int = 1883, timeout: Optional[float] = None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._write_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.writer is not None and not self.writer.is_closing()

    async def open(self) -> None:
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out connecting to {self.host}:{self.port}") from e
        except OSError as e:
            raise TransportError(f"Failed to connect to {self.host}:{self.port}: {e}") from e
        logger.debug(f"Opened TCP connection to {self.host}:{self.port}")

    async def close(self) -> None:
        writer = self.writer
        self.reader = None
        self.writer = None
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing connection to {self.host}:{self.port}: {e}")

    async def send(self, frame: bytes) -> None:
        if self.writer is None:
            raise ConnectionClosed("Transport is not open")
        try:
            async with self._write_lock:
                self.writer.write(frame)
                await self.writer.drain()
        except OSError as e:
            raise TransportError(f"Send failed: {e}") from e

    async def receive(self) -> bytes:
        if self.reader is None:
            raise ConnectionClosed("Transport is not open")
        try:
            return await read_frame(self.reader)
        except asyncio.IncompleteReadError as e:
            raise ConnectionClosed("Broker closed the connection") from e
        except OSError as e:
            raise TransportError(f"Receive failed: {e}") from e
