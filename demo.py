#!/usr/bin/env python3
"""
AppAtOnce SDK Demo - Shows query encoding and realtime subscriptions.

This demo runs offline: the realtime manager talks to the in-memory
socket transport instead of a server.
"""

import asyncio

from sdk.appatonce_sdk import (
    ConnectionState,
    QueryRequest,
    RealtimeSubscriptionManager,
    SubscriptionState,
    condition,
    desc,
    encode,
    select,
)
from sdk.appatonce_sdk.memory import InMemorySocketTransport


async def main():
    print("=" * 60)
    print("AppAtOnce SDK Demo - Query Encoding and Realtime")
    print("=" * 60)
    print()

    # 1. Encode a query
    print("[Step 1] Encoding a query...")
    request = encode(
        QueryRequest(
            where=[condition("status", "eq", "active")],
            order_by=[desc("score")],
            select=select(["name", "age"]),
        ),
        path="/data/users",
    )
    print(f"  GET {request.url}")
    print()

    # 2. Connect the realtime manager
    print("[Step 2] Connecting realtime manager...")
    server = InMemorySocketTransport()
    manager = RealtimeSubscriptionManager(server, "memory://demo", "ak_demo")
    manager.on_state_change(lambda state: print(f"  state -> {state.value}"))
    manager.on_change(
        lambda event: print(f"  {event.event_type.value} on {event.table}: {dict(event.record)}")
    )

    handle = manager.subscribe("orders", ["INSERT", "UPDATE"])
    await manager.connect()
    print()

    # 3. Receive changes
    print("[Step 3] Publishing changes...")
    while manager.subscription_state(handle) is not SubscriptionState.CONFIRMED:
        await asyncio.sleep(0.01)
    server.publish("orders", "INSERT", {"id": 1, "total": 40}, sequence=1)
    server.publish("orders", "INSERT", {"id": 1, "total": 40}, sequence=1)  # duplicate, dropped
    server.publish("orders", "DELETE", {"id": 1})  # not subscribed, dropped
    server.publish("orders", "UPDATE", {"id": 1, "total": 55}, sequence=2)
    await asyncio.sleep(0.05)
    print()

    # 4. Survive a dropped connection
    print("[Step 4] Dropping the connection...")
    server.latest.drop("transport close")
    while manager.state is not ConnectionState.READY or len(server.connections) < 2:
        await asyncio.sleep(0.05)
    print(f"  resubscribed: {server.sent('subscribe_table')[-1][1]}")
    print()

    # 5. Channels and presence
    print("[Step 5] Chatting on a channel...")
    manager.subscribe_channel("lobby", lambda msg: print(f"  #{msg.channel}: {msg.message}"))
    manager.join_presence("lobby", {"id": "demo", "name": "Demo User"})
    await asyncio.sleep(0.05)
    await manager.publish("lobby", "hello from the demo")
    await asyncio.sleep(0.05)
    print(f"  present: {list(manager.presence('lobby'))}")
    print()

    await manager.close()
    print(f"  status: {manager.status()}")

    print("=" * 60)
    print("Demo Complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
