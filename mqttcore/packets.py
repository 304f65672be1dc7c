"""Control packets and their MQTT 3.1.1 style wire encoding.

Every packet is a dataclass with an ``encode()`` method. ``decode_packet``
turns one complete frame received from a broker (fixed header included)
back into a packet.
"""
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple, Union

from .errors import ProtocolError
from .will_message import QoSLevel, WillMessage

PROTOCOL_NAME = b'MQTT'
PROTOCOL_LEVEL = 4  # MQTT 3.1.1
SUBACK_FAILURE = 0x80

class MessageType(IntEnum):
    CONNECT = 1
    CONNACK = 2
    PUBLISH = 3
    PUBACK = 4
    PUBREC = 5
    PUBREL = 6
    PUBCOMP = 7
    SUBSCRIBE = 8
    SUBACK = 9
    UNSUBSCRIBE = 10
    UNSUBACK = 11
    PINGREQ = 12
    PINGRESP = 13
    DISCONNECT = 14


def encode_remaining_length(length: int) -> bytes:
    encoded = bytearray()
    while True:
        byte = length & 0x7F
        length >>= 7
        if length > 0:
            byte |= 0x80
        encoded.append(byte)
        if length == 0:
            return bytes(encoded)


def decode_remaining_length(data: bytes, pos: int = 1) -> Tuple[int, int]:
    """Decode the variable length field starting at ``pos``; return (length, next_pos)"""
    remaining_length = 0
    multiplier = 1
    for _ in range(4):
        if pos >= len(data):
            raise ProtocolError("Truncated remaining length")
        byte = data[pos]
        pos += 1
        remaining_length += (byte & 0x7F) * multiplier
        if byte & 0x80 == 0:
            return remaining_length, pos
        multiplier *= 128
    raise ProtocolError("Malformed remaining length")


def _fixed_header(packet_type: MessageType, flags: int, body: bytes) -> bytes:
    return bytes([(packet_type << 4) | flags]) + encode_remaining_length(len(body)) + body


def _encode_string(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        value = value.encode('utf-8')
    return len(value).to_bytes(2, 'big') + value


def _decode_bytes(data: bytes, pos: int) -> Tuple[bytes, int]:
    if pos + 2 > len(data):
        raise ProtocolError("Truncated length prefix")
    length = int.from_bytes(data[pos:pos + 2], 'big')
    pos += 2
    if pos + length > len(data):
        raise ProtocolError("Truncated field")
    return data[pos:pos + length], pos + length


def _decode_string(data: bytes, pos: int) -> Tuple[str, int]:
    raw, pos = _decode_bytes(data, pos)
    try:
        return raw.decode('utf-8'), pos
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Invalid UTF-8 string: {e}") from e


def _decode_packet_id(data: bytes, pos: int = 0) -> int:
    if pos + 2 > len(data):
        raise ProtocolError("Missing packet identifier")
    return int.from_bytes(data[pos:pos + 2], 'big')


@dataclass
class ConnectPacket:
    client_id: str
    clean_session: bool = True
    keep_alive: int = 60
    username: Optional[str] = None
    password: Optional[bytes] = None
    will_message: Optional[WillMessage] = None

    def encode(self) -> bytes:
        """Encode the CONNECT packet into bytes"""
        packet = bytearray(_encode_string(PROTOCOL_NAME))
        packet.append(PROTOCOL_LEVEL)

        flags = 0
        if self.clean_session:
            flags |= 0x02
        if self.username is not None:
            flags |= 0x80
        if self.password is not None:
            flags |= 0x40
        if self.will_message:
            flags |= 0x04
            flags |= (self.will_message.qos << 3)
            if self.will_message.retain:
                flags |= 0x20
        packet.append(flags)

        packet.extend(self.keep_alive.to_bytes(2, 'big'))
        packet.extend(_encode_string(self.client_id))

        if self.will_message:
            packet.extend(_encode_string(self.will_message.topic))
            packet.extend(_encode_string(self.will_message.payload))

        if self.username is not None:
            packet.extend(_encode_string(self.username))

        if self.password is not None:
            packet.extend(_encode_string(self.password))

        return _fixed_header(MessageType.CONNECT, 0, bytes(packet))


@dataclass
class ConnackPacket:
    session_present: bool = False
    return_code: int = 0

    def encode(self) -> bytes:
        body = bytes([1 if self.session_present else 0, self.return_code])
        return _fixed_header(MessageType.CONNACK, 0, body)

    @classmethod
    def decode(cls, flags: int, data: bytes) -> 'ConnackPacket':
        if len(data) != 2:
            raise ProtocolError("CONNACK must carry exactly two bytes")
        return cls(session_present=bool(data[0] & 0x01), return_code=data[1])


@dataclass
class PublishPacket:
    topic: str
    payload: bytes
    qos: QoSLevel = QoSLevel.AT_MOST_ONCE
    retain: bool = False
    dup: bool = False
    packet_id: Optional[int] = None

    def encode(self) -> bytes:
        """Encode the PUBLISH packet into bytes"""
        packet = bytearray(_encode_string(self.topic))

        # Packet identifier (only for QoS > 0)
        if self.qos != QoSLevel.AT_MOST_ONCE:
            if self.packet_id is None:
                raise ValueError("Packet ID required for QoS > 0")
            packet.extend(self.packet_id.to_bytes(2, 'big'))

        packet.extend(self.payload)

        flags = self.qos << 1
        if self.dup:
            flags |= 0x08
        if self.retain:
            flags |= 0x01
        return _fixed_header(MessageType.PUBLISH, flags, bytes(packet))

    @classmethod
    def decode(cls, flags: int, data: bytes) -> 'PublishPacket':
        qos_bits = (flags >> 1) & 0x03
        if qos_bits == 3:
            raise ProtocolError("PUBLISH with QoS 3")
        qos = QoSLevel(qos_bits)
        topic, pos = _decode_string(data, 0)
        packet_id = None
        if qos != QoSLevel.AT_MOST_ONCE:
            packet_id = _decode_packet_id(data, pos)
            pos += 2
        return cls(
            topic=topic,
            payload=bytes(data[pos:]),
            qos=qos,
            retain=bool(flags & 0x01),
            dup=bool(flags & 0x08),
            packet_id=packet_id
        )


@dataclass
class AckPacket:
    """PUBACK, PUBREC, PUBREL, PUBCOMP and UNSUBACK share one layout"""
    packet_type: MessageType
    packet_id: int

    def encode(self) -> bytes:
        flags = 0x02 if self.packet_type == MessageType.PUBREL else 0
        return _fixed_header(self.packet_type, flags, self.packet_id.to_bytes(2, 'big'))

    @classmethod
    def decode(cls, packet_type: MessageType, data: bytes) -> 'AckPacket':
        return cls(packet_type=packet_type, packet_id=_decode_packet_id(data))


@dataclass
class SubscribePacket:
    packet_id: int
    topic_filters: List[Tuple[str, QoSLevel]]

    def encode(self) -> bytes:
        """Encode SUBSCRIBE packet to bytes"""
        packet = bytearray(self.packet_id.to_bytes(2, 'big'))
        for topic, qos in self.topic_filters:
            packet.extend(_encode_string(topic))
            packet.append(int(qos))
        return _fixed_header(MessageType.SUBSCRIBE, 0x02, bytes(packet))


@dataclass
class SubackPacket:
    packet_id: int
    return_codes: List[int] = field(default_factory=list)

    def encode(self) -> bytes:
        body = self.packet_id.to_bytes(2, 'big') + bytes(self.return_codes)
        return _fixed_header(MessageType.SUBACK, 0, body)

    @classmethod
    def decode(cls, flags: int, data: bytes) -> 'SubackPacket':
        return cls(packet_id=_decode_packet_id(data), return_codes=list(data[2:]))


@dataclass
class UnsubscribePacket:
    packet_id: int
    topics: List[str]

    def encode(self) -> bytes:
        packet = bytearray(self.packet_id.to_bytes(2, 'big'))
        for topic in self.topics:
            packet.extend(_encode_string(topic))
        return _fixed_header(MessageType.UNSUBSCRIBE, 0x02, bytes(packet))


@dataclass
class SimplePacket:
    """PINGREQ, PINGRESP and DISCONNECT carry no body"""
    packet_type: MessageType

    def encode(self) -> bytes:
        return _fixed_header(self.packet_type, 0, b'')


_ACK_TYPES = (
    MessageType.PUBACK,
    MessageType.PUBREC,
    MessageType.PUBREL,
    MessageType.PUBCOMP,
    MessageType.UNSUBACK,
)

_DECODERS = {
    MessageType.CONNACK: ConnackPacket.decode,
    MessageType.PUBLISH: PublishPacket.decode,
    MessageType.SUBACK: SubackPacket.decode,
}

# only ever sent by clients
_CLIENT_TYPES = (MessageType.CONNECT, MessageType.SUBSCRIBE, MessageType.UNSUBSCRIBE)


def split_frame(frame: bytes) -> Tuple[MessageType, int, bytes]:
    """Check the fixed header of one complete frame; return (type, flags, body)"""
    if not frame:
        raise ProtocolError("Empty frame")
    try:
        packet_type = MessageType(frame[0] >> 4)
    except ValueError:
        raise ProtocolError(f"Unknown packet type {frame[0] >> 4}")
    remaining_length, pos = decode_remaining_length(frame, 1)
    body = frame[pos:pos + remaining_length]
    if len(body) != remaining_length:
        raise ProtocolError("Frame shorter than its remaining length")
    return packet_type, frame[0] & 0x0F, body


def decode_packet(frame: bytes):
    """Decode one complete frame received from a broker into a packet object"""
    packet_type, flags, body = split_frame(frame)
    if packet_type in _CLIENT_TYPES:
        raise ProtocolError(f"Unexpected {packet_type.name} packet from broker")
    if packet_type in _ACK_TYPES:
        return AckPacket.decode(packet_type, body)
    if packet_type in _DECODERS:
        try:
            return _DECODERS[packet_type](flags, body)
        except (IndexError, ValueError) as e:
            raise ProtocolError(f"Malformed {packet_type.name} packet: {e}") from e
    return SimplePacket(packet_type)
