"""
Chaos Simulation Script

Fires concurrent traffic at a running API to exercise the race-prone parts
of the order lifecycle:
    - many guests placing a first order on the same FREE table at once
    - the same payment webhook delivered many times in parallel

Run from project root with the API in development mode:
    python scripts/simulate.py --seed
    python scripts/simulate.py --restaurant 1 --table 1 --item 1

Author: Khalil_Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import os
import json
import hmac
import hashlib
import random
import time
import argparse
from datetime import datetime
from typing import Any, Optional

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
STAFF_HEADERS = {"X-Actor-Id": "chaos-sim"}
MOCK_WEBHOOK_SECRET = os.getenv("MOCK_WEBHOOK_SECRET", "whsec_mock_development")

FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]


# =============================================================================
# SEEDING
# =============================================================================

async def seed() -> dict[str, int]:
    """Create a PKR restaurant, one table and one well-stocked item."""
    from tableside.database import async_session_maker, init_db
    from tableside.models import MenuItem, Restaurant, Table

    await init_db()
    async with async_session_maker() as session:
        restaurant = Restaurant(name="Chaos Kitchen", currency="PKR", tax_rate=16.0)
        session.add(restaurant)
        await session.flush()

        table = Table(restaurant_id=restaurant.id, name=f"T-{random.randint(1000, 9999)}")
        item = MenuItem(
            restaurant_id=restaurant.id,
            name="Chicken Karahi",
            price=1450.0,
            stock_quantity=500,
            low_stock_threshold=20,
        )
        session.add_all([table, item])
        await session.commit()

        ids = {"restaurant": restaurant.id, "table": table.id, "item": item.id}

    print(f"🌱 Seeded: {ids}")
    return ids


# =============================================================================
# TABLE RUSH
# =============================================================================

def order_payload(ids: dict[str, int], token: Optional[str] = None) -> dict[str, Any]:
    return {
        "restaurant_id": ids["restaurant"],
        "table_id": ids["table"],
        "security_token": token,
        "customer_name": random.choice(FIRST_NAMES),
        "items": [{"menu_item_id": ids["item"], "quantity": random.randint(1, 3)}],
    }


async def send_order(
    client: httpx.AsyncClient,
    ids: dict[str, int],
    order_num: int,
    token: Optional[str] = None,
) -> dict[str, Any]:
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders",
            json=order_payload(ids, token),
            timeout=30.0
        )
        elapsed = round(time.time() - start_time, 3)
        data = response.json()

        if response.status_code == 201:
            return {
                "order_num": order_num,
                "success": True,
                "order_id": data["order"]["id"],
                "session_id": data.get("session_id"),
                "token": data.get("security_token"),
                "time": elapsed,
            }
        return {
            "order_num": order_num,
            "success": False,
            "status": response.status_code,
            "error": data.get("detail") or response.text[:100],
            "time": elapsed,
        }
    except httpx.HTTPError as e:
        return {
            "order_num": order_num,
            "success": False,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
        }


async def table_rush(client: httpx.AsyncClient, ids: dict[str, int], guests: int) -> list[dict]:
    """All guests order on the same free table at the same instant."""
    print(f"\n🚀 {guests} guests ordering on table {ids['table']} at once...\n")
    results = await asyncio.gather(*[send_order(client, ids, i + 1) for i in range(guests)])

    successful = [r for r in results if r["success"]]
    sessions = {r["session_id"] for r in successful}
    rejected = [r for r in results if not r["success"]]

    print(f"✅ Orders accepted: {len(successful)}/{guests}")
    print(f"🔒 Rejected (no token for the open session): {len(rejected)}")
    print(f"🪑 Distinct sessions opened: {len(sessions)} (expected 1)")

    if successful:
        token = successful[0]["token"]
        follow_up = await send_order(client, ids, guests + 1, token=token)
        print(f"🔁 Follow-up order with the session token: {'ok' if follow_up['success'] else follow_up['error']}")
        if follow_up["success"]:
            successful.append(follow_up)

    return successful


# =============================================================================
# WEBHOOK STORM
# =============================================================================

def signed_webhook(tracking_id: str, amount: float, currency: str) -> tuple[bytes, str]:
    """Body and signature as the development mock gateway expects them."""
    body = json.dumps({
        "type": "payment.updated",
        "data": {
            "tracker": tracking_id,
            "state": "PAID",
            "amount": int(round(amount * 100)),
            "currency": currency,
            "metadata": {},
        },
    }).encode()
    signature = hmac.new(MOCK_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return body, signature


async def webhook_storm(client: httpx.AsyncClient, order_id: int, deliveries: int) -> None:
    """Create a checkout, then deliver its success webhook many times in parallel."""
    response = await client.post(f"{API_BASE_URL}/api/payments/create", json={"order_id": order_id})
    if response.status_code != 200:
        print(f"❌ Checkout failed: {response.text[:100]}")
        return

    handle = response.json()["data"]
    gateway = handle["gateway"].lower()
    body, signature = signed_webhook(handle["tracking_id"], handle["amount"], handle["currency"])
    header = "stripe-signature" if gateway == "stripe" else "X-SFPY-Signature"

    print(f"\n💳 Delivering {deliveries} identical {handle['gateway']} webhooks for order {order_id}...\n")
    responses = await asyncio.gather(*[
        client.post(
            f"{API_BASE_URL}/api/payments/webhook/{gateway}",
            content=body,
            headers={header: signature, "Content-Type": "application/json"},
        )
        for _ in range(deliveries)
    ])

    marked = sum(
        1 for r in responses
        if r.status_code == 200 and r.json()["result"]["order_marked_paid"]
    )
    print(f"✅ Deliveries acknowledged: {sum(1 for r in responses if r.status_code == 200)}/{deliveries}")
    print(f"💰 Deliveries that flipped the order to PAID: {marked} (expected 1)")


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(ids: dict[str, int], guests: int, deliveries: int) -> None:
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - HIGH CONCURRENCY TEST")
    print("=" * 70)
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"👥 Guests: {guests}   📨 Webhook deliveries: {deliveries}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        health = await client.get(f"{API_BASE_URL}/health")
        print(f"🩺 Health: {health.json().get('status')}")

        placed = await table_rush(client, ids, guests)
        if placed:
            await webhook_storm(client, placed[0]["order_id"], deliveries)

        bill = await client.get(f"{API_BASE_URL}/api/tables/{ids['table']}/bill")
        if bill.status_code == 200:
            data = bill.json()
            print(f"\n🧾 Session bill: total {data['total']:.2f}, outstanding {data['outstanding']:.2f}")

        await client.patch(f"{API_BASE_URL}/api/tables/{ids['table']}/reset", headers=STAFF_HEADERS)
        print("🧹 Table reset")

    print("\n" + "=" * 70)
    print(f"⏱️  Total Time: {round(time.time() - start_time, 2)}s")
    print("=" * 70)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--seed", action="store_true", help="Seed a restaurant, table and item first")
    parser.add_argument("--restaurant", type=int, default=1)
    parser.add_argument("--table", type=int, default=1)
    parser.add_argument("--item", type=int, default=1)
    parser.add_argument("--guests", type=int, default=20, help="Concurrent first orders")
    parser.add_argument("--deliveries", type=int, default=10, help="Duplicate webhook deliveries")
    args = parser.parse_args()

    if args.seed:
        ids = asyncio.run(seed())
    else:
        ids = {"restaurant": args.restaurant, "table": args.table, "item": args.item}

    asyncio.run(run_simulation(ids, args.guests, args.deliveries))
