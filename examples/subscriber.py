import asyncio
import logging

from mqttcore import Client, ClientOptions, QoSLevel

def on_sensor(topic, qos, payload, retain):
    # Plain functions run on the handler thread pool
    print(f"[sensor] {topic}: {payload.decode(errors='replace')} (QoS {int(qos)}, retained={retain})")

async def on_control(topic, qos, payload, retain):
    print(f"[control] {topic}: {payload!r}")

async def run_subscriber(host: str = "localhost", port: int = 1883):
    client = Client(
        "example_subscriber",
        ClientOptions(auto_reconnect=True),
        on_error=lambda error: print(f"Client error: {error}")
    )
    await client.connect(host, port)

    async with client:
        granted = await client.subscribe([
            ("sensors/#", QoSLevel.AT_LEAST_ONCE),  # Wildcard subscription
            ("system/alerts", QoSLevel.AT_MOST_ONCE)
        ], on_sensor)
        granted += await client.subscribe([("control/+/status", QoSLevel.EXACTLY_ONCE)], on_control)
        print(f"Subscribed, granted QoS: {[int(qos) for qos in granted]}")

        # Keep connection alive to receive messages
        while True:
            await asyncio.sleep(1)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(run_subscriber())
    except KeyboardInterrupt:
        print("\nSubscriber shutting down...")
