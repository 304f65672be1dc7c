import asyncio
import logging
from pathlib import Path

from mqttcore import (
    Client, ClientOptions, DeliveryFailure, JsonFileStoreBackend,
    OperationTimeout, QoSLevel, WillMessage
)

def setup_publisher(client_id: str) -> Client:
    """Setup a publisher with will message"""
    will_message = WillMessage(
        topic="status/disconnected",
        payload=f"{client_id} disconnected".encode(),
        qos=QoSLevel.AT_LEAST_ONCE,
        retain=True
    )
    return Client(client_id, ClientOptions(will=will_message, retry_interval=2.0))

def setup_subscriber(client_id: str, state_dir: Path) -> Client:
    """Setup a subscriber whose in-flight messages survive restarts"""
    options = ClientOptions(clean_session=False, auto_reconnect=True)
    backend = JsonFileStoreBackend(state_dir / f"{client_id}.json")
    return Client(client_id, options, store_backend=backend)

async def run_scenario(host: str = "localhost", port: int = 1883):
    """Run a complete publish/subscribe scenario"""
    received = asyncio.Queue()

    async def on_message(topic, qos, payload, retain):
        await received.put((topic, payload))

    subscriber = setup_subscriber("example_sub", Path(".mqtt-state"))
    publisher = setup_publisher("example_pub")

    session_present = await subscriber.connect(host, port)
    print(f"Subscriber connected, session present: {session_present}")
    await subscriber.subscribe([("sensors/#", QoSLevel.EXACTLY_ONCE), ("status/#", QoSLevel.AT_LEAST_ONCE)],
                               on_message)

    await publisher.connect(host, port)
    try:
        for i in range(3):
            await publisher.publish(f"sensors/room{i}/temp", f"{20 + i}.0", qos=QoSLevel.EXACTLY_ONCE, timeout=10)
    except (DeliveryFailure, OperationTimeout) as e:
        print(f"Delivery problem: {e}")
    finally:
        await publisher.disconnect()

    for _ in range(3):
        topic, payload = await asyncio.wait_for(received.get(), 10)
        print(f"Received {payload.decode()} on {topic}")

    await subscriber.disconnect()

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_scenario())
