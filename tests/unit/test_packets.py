import unittest

# add project root and tests directory into path
import sys
import os

TESTS_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(os.path.dirname(TESTS_DIR))
sys.path.insert(0, TESTS_DIR)

from fake_broker import decode_client_packet
from mqttcore.errors import ProtocolError
from mqttcore.packets import (
    AckPacket,
    ConnackPacket,
    ConnectPacket,
    MessageType,
    PublishPacket,
    SimplePacket,
    SubackPacket,
    SubscribePacket,
    UnsubscribePacket,
    decode_packet,
    decode_remaining_length,
    encode_remaining_length,
)
from mqttcore.will_message import QoSLevel, WillMessage

class TestConnectPacketEncodingDecoding(unittest.TestCase):
    """Test suite for CONNECT packet encoding/decoding"""

    def test_encode_minimal_connect_packet(self):
        """Test encoding of a minimal CONNECT packet with only required fields"""
        encoded = ConnectPacket(client_id="test_client", clean_session=True, keep_alive=60).encode()

        self.assertEqual(encoded[0] >> 4, MessageType.CONNECT)
        self.assertEqual(encoded[1], len(encoded) - 2)
        self.assertEqual(encoded[2:9], b'\x00\x04MQTT\x04')
        self.assertEqual(encoded[9], 0x02)
        self.assertEqual(encoded[10:12], b'\x00\x3C')  # 60 seconds
        self.assertEqual(encoded[12:14], b'\x00\x0B')
        self.assertEqual(encoded[14:25], b'test_client')

    def test_full_connect_packet(self):
        """Test a CONNECT packet with all optional fields survives decoding"""
        packet = ConnectPacket(
            client_id="test_client",
            clean_session=False,
            keep_alive=30,
            username="user",
            password=b"pass",
            will_message=WillMessage(
                topic="will/topic",
                payload=b"offline",
                qos=QoSLevel.AT_LEAST_ONCE,
                retain=True
            )
        )
        encoded = packet.encode()
        # username, password, will retain, will QoS 1, will flag
        self.assertEqual(encoded[9], 0x80 | 0x40 | 0x20 | 0x08 | 0x04)
        self.assertEqual(decode_client_packet(encoded), packet)

    def test_connack(self):
        decoded = decode_packet(ConnackPacket(session_present=True, return_code=5).encode())
        self.assertTrue(decoded.session_present)
        self.assertEqual(decoded.return_code, 5)

class TestPublishPacket(unittest.TestCase):
    """Test suite for PUBLISH packet creation and encoding"""

    def test_qos0_packet_creation(self):
        packet = PublishPacket(topic="test/topic", payload=b"test message")

        self.assertEqual(packet.qos, QoSLevel.AT_MOST_ONCE)
        self.assertFalse(packet.retain)
        self.assertFalse(packet.dup)
        self.assertIsNone(packet.packet_id)
        self.assertEqual(decode_packet(packet.encode()), packet)

    def test_packet_encoding_flags(self):
        """Test DUP, QoS and RETAIN bits in the fixed header"""
        encoded = PublishPacket(
            topic="test/topic",
            payload=b"test message",
            qos=QoSLevel.EXACTLY_ONCE,
            retain=True,
            dup=True,
            packet_id=1
        ).encode()

        self.assertEqual(encoded[0] >> 4, MessageType.PUBLISH)
        self.assertTrue(encoded[0] & 0x08)
        self.assertEqual((encoded[0] & 0x06) >> 1, QoSLevel.EXACTLY_ONCE)
        self.assertTrue(encoded[0] & 0x01)

    def test_qos1_requires_packet_id(self):
        with self.assertRaises(ValueError):
            PublishPacket(topic="a", payload=b"", qos=QoSLevel.AT_LEAST_ONCE).encode()

    def test_utf8_topic_length_prefix(self):
        packet = PublishPacket(topic="温度/客厅", payload="23.5".encode(), qos=QoSLevel.AT_LEAST_ONCE, packet_id=9)
        decoded = decode_packet(packet.encode())
        self.assertEqual(decoded.topic, "温度/客厅")
        self.assertEqual(decoded.payload, b"23.5")
        self.assertEqual(decoded.packet_id, 9)

    def test_large_payload_remaining_length(self):
        packet = PublishPacket(topic="big", payload=b"x" * 200000)
        decoded = decode_packet(packet.encode())
        self.assertEqual(len(decoded.payload), 200000)

class TestOtherPackets(unittest.TestCase):

    def test_acks(self):
        for packet_type in (MessageType.PUBACK, MessageType.PUBREC, MessageType.PUBREL,
                            MessageType.PUBCOMP, MessageType.UNSUBACK):
            with self.subTest(packet_type=packet_type):
                decoded = decode_packet(AckPacket(packet_type, 321).encode())
                self.assertEqual(decoded, AckPacket(packet_type, 321))

    def test_pubrel_has_reserved_flag(self):
        self.assertEqual(AckPacket(MessageType.PUBREL, 1).encode()[0], 0x62)

    def test_subscribe_and_suback(self):
        subscribe = SubscribePacket(
            packet_id=4,
            topic_filters=[("a/+", QoSLevel.AT_LEAST_ONCE), ("b/#", QoSLevel.EXACTLY_ONCE)]
        )
        encoded = subscribe.encode()
        self.assertEqual(encoded[0], 0x82)
        self.assertEqual(decode_client_packet(encoded), subscribe)

        suback = decode_packet(SubackPacket(4, [1, 0x80]).encode())
        self.assertEqual(suback.return_codes, [1, 0x80])

    def test_unsubscribe(self):
        packet = UnsubscribePacket(packet_id=2, topics=["a/+", "b"])
        self.assertEqual(decode_client_packet(packet.encode()), packet)

    def test_simple_packets(self):
        for packet_type in (MessageType.PINGREQ, MessageType.PINGRESP, MessageType.DISCONNECT):
            with self.subTest(packet_type=packet_type):
                encoded = SimplePacket(packet_type).encode()
                self.assertEqual(encoded, bytes([packet_type << 4, 0]))
                self.assertEqual(decode_packet(encoded), SimplePacket(packet_type))

class TestFraming(unittest.TestCase):
    """Test suite for the variable length field and malformed frames"""

    def test_remaining_length(self):
        for length, encoded in [(0, b'\x00'), (127, b'\x7f'), (128, b'\x80\x01'),
                                (16383, b'\xff\x7f'), (2097152, b'\x80\x80\x80\x01')]:
            with self.subTest(length=length):
                self.assertEqual(encode_remaining_length(length), encoded)
                self.assertEqual(decode_remaining_length(b'\x30' + encoded), (length, 1 + len(encoded)))

    def test_malformed_remaining_length(self):
        with self.assertRaises(ProtocolError):
            decode_remaining_length(b'\x30\xff\xff\xff\xff\x01')

    def test_truncated_frame(self):
        frame = PublishPacket(topic="a/b", payload=b"hello").encode()
        with self.assertRaises(ProtocolError):
            decode_packet(frame[:-2])

    def test_unknown_packet_type(self):
        with self.assertRaises(ProtocolError):
            decode_packet(b'\xf0\x00')

    def test_empty_frame(self):
        with self.assertRaises(ProtocolError):
            decode_packet(b'')

    def test_client_only_packets_rejected(self):
        """Test frames a broker never sends to a client do not decode"""
        for packet in (ConnectPacket(client_id="c1"), SubscribePacket(1, [("a", QoSLevel.AT_MOST_ONCE)]),
                       UnsubscribePacket(1, ["a"])):
            with self.subTest(packet=packet):
                with self.assertRaises(ProtocolError):
                    decode_packet(packet.encode())

if __name__ == '__main__':
    unittest.main()
