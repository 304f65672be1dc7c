import asyncio
import logging

from mqttcore import ClientOptions, QoSLevel, connect

async def run_publisher(broker: str = "localhost:1883"):
    client = await connect(broker, "example_publisher", ClientOptions(keep_alive_interval=60))

    # Publish messages with different QoS levels
    messages = [
        ("sensors/temperature", b"24.5", QoSLevel.AT_MOST_ONCE),
        ("sensors/humidity", b"65", QoSLevel.AT_LEAST_ONCE),
        ("sensors/pressure", b"1013", QoSLevel.EXACTLY_ONCE)
    ]

    async with client:
        for topic, payload, qos in messages:
            packet_id = await client.publish(topic, payload, qos=qos, timeout=10)

            print(f"Published message to {topic} with QoS {int(qos)}")
            if packet_id:
                print(f"Packet ID: {packet_id}")

            # Small delay between messages
            await asyncio.sleep(1)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_publisher())
