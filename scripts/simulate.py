"""
Concurrent Tender Simulation

Hammers a running order engine with concurrent payments against the same
orders and checks that nothing was lost or double counted.

For every order:
    1. Create a takeaway order with random menu items
    2. Fire split tenders concurrently, each with its own Idempotency-Key
    3. Replay a share of those tenders with the SAME keys (client retries)
    4. Read the order back and compare its accumulators with the unique tenders

Usage:
    python scripts/simulate.py
    python scripts/simulate.py --orders 20 --tenders 8 --duplicates 0.5
    python scripts/simulate.py --base-url http://localhost:8001 --token dev-admin
"""

import argparse
import asyncio
import random
import sys
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

# Fix Windows asyncio
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


API_BASE_URL = "http://localhost:8001"
DEFAULT_TOKEN = "dev-staff"
TOTAL_ORDERS = 10
TENDERS_PER_ORDER = 6

CUSTOMER_NAMES = [
    "Carlos Ramirez", "Lucia Fernandez", "Jorge Quispe", "Maria Torres",
    "Ana Huaman", "Diego Castillo", "Rosa Mendoza", "Luis Vargas",
]

MENU_PICKS = [
    "salchi_clasica", "choripapa", "alitas_clasicas_6", "agua",
]


# =============================================================================
# PAYLOAD GENERATORS
# =============================================================================

def generate_order_payload() -> dict[str, Any]:
    items = [
        {"menuItemId": item_id, "quantity": random.randint(1, 3)}
        for item_id in random.sample(MENU_PICKS, k=random.randint(1, 3))
    ]
    return {
        "channel": "takeaway",
        "customerName": random.choice(CUSTOMER_NAMES),
        "items": items,
        "notes": "simulation",
    }


def split_total(total: Decimal, parts: int) -> list[dict[str, float]]:
    """
    Split total into `parts` small tenders that together stay below the total,
    so every one of them is accepted and the order stays payable.
    """
    budget = (total * Decimal("0.9")).quantize(Decimal("0.01"))
    share = (budget / parts).quantize(Decimal("0.01"))
    tenders = []
    for _ in range(parts):
        instrument = random.choice(["cash", "yape", "card"])
        tenders.append({instrument: float(share)})
    return tenders


# =============================================================================
# HTTP HELPERS
# =============================================================================

async def create_order(client: httpx.AsyncClient, base_url: str) -> dict[str, Any]:
    response = await client.post(
        f"{base_url}/api/orders",
        json=generate_order_payload(),
        headers={"Idempotency-Key": f"sim-create-{uuid.uuid4().hex}"},
        timeout=30.0,
    )
    response.raise_for_status()
    return response.json()["data"]


async def send_tender(
    client: httpx.AsyncClient,
    base_url: str,
    order_id: str,
    tender: dict[str, float],
    key: str,
) -> dict[str, Any]:
    """Send one tender; never raises so gather() sees every outcome."""
    start_time = time.time()
    try:
        response = await client.post(
            f"{base_url}/api/orders/{order_id}/payments",
            json=tender,
            headers={"Idempotency-Key": key},
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)
        body = response.json()
        return {
            "key": key,
            "success": response.status_code == 200,
            "status_code": response.status_code,
            "error": None if response.status_code == 200 else body.get("message"),
            "time": elapsed,
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {"key": key, "success": False, "status_code": None, "error": str(e)[:100], "time": elapsed}


async def fetch_order(client: httpx.AsyncClient, base_url: str, order_id: str) -> dict[str, Any]:
    response = await client.get(f"{base_url}/api/orders/{order_id}", timeout=30.0)
    response.raise_for_status()
    return response.json()["data"]


# =============================================================================
# SIMULATION
# =============================================================================

async def simulate_order(
    client: httpx.AsyncClient,
    base_url: str,
    tenders_per_order: int,
    duplicate_ratio: float,
) -> dict[str, Any]:
    order = await create_order(client, base_url)
    order_id = order["id"]
    tenders = split_total(Decimal(str(order["total"])), tenders_per_order)
    keyed = [(f"sim-pay-{uuid.uuid4().hex}", tender) for tender in tenders]

    # Retries reuse a key from the first wave and must be no-ops.
    replays = random.sample(keyed, k=int(len(keyed) * duplicate_ratio))
    wave = keyed + replays
    random.shuffle(wave)

    results = await asyncio.gather(*[
        send_tender(client, base_url, order_id, tender, key) for key, tender in wave
    ])

    accepted_keys = {r["key"] for r in results if r["success"]}
    expected = {"cash": Decimal("0"), "yape": Decimal("0"), "card": Decimal("0")}
    for key, tender in keyed:
        if key in accepted_keys:
            for instrument, amount in tender.items():
                expected[instrument] += Decimal(str(amount))

    final = await fetch_order(client, base_url, order_id)
    observed = {
        "cash": Decimal(str(final["cashReceived"])),
        "yape": Decimal(str(final["yapeAmount"])),
        "card": Decimal(str(final["cardAmount"])),
    }

    return {
        "order_id": order_id,
        "sent": len(wave),
        "unique": len(keyed),
        "accepted": len(accepted_keys),
        "failed": [r for r in results if not r["success"]],
        "times": [r["time"] for r in results],
        "expected": expected,
        "observed": observed,
        "consistent": expected == observed,
    }


async def run_simulation(
    base_url: str = API_BASE_URL,
    token: str = DEFAULT_TOKEN,
    num_orders: int = TOTAL_ORDERS,
    tenders_per_order: int = TENDERS_PER_ORDER,
    duplicate_ratio: float = 0.5,
) -> dict[str, Any]:
    print("=" * 70)
    print("🔥 CONCURRENT TENDER SIMULATION")
    print("=" * 70)
    print(f"📋 Orders: {num_orders}")
    print(f"💳 Tenders per order: {tenders_per_order} (+{int(duplicate_ratio * 100)}% replays)")
    print(f"🎯 Target: {base_url}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    headers = {"Authorization": f"Bearer {token}"}
    async with httpx.AsyncClient(headers=headers) as client:
        results = await asyncio.gather(*[
            simulate_order(client, base_url, tenders_per_order, duplicate_ratio)
            for _ in range(num_orders)
        ])
    total_time = round(time.time() - start_time, 2)

    consistent = [r for r in results if r["consistent"]]
    inconsistent = [r for r in results if not r["consistent"]]
    all_times = [t for r in results for t in r["times"]]
    failures = [f for r in results for f in r["failed"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Consistent orders: {len(consistent)}/{num_orders}")
    print(f"❌ Inconsistent orders: {len(inconsistent)}/{num_orders}")
    print(f"📨 Payment requests sent: {len(all_times)}")
    print(f"⚠️  Rejected requests: {len(failures)}")
    print(f"⏱️  Total Time: {total_time}s")

    if all_times:
        print(f"\n📈 Performance Metrics:")
        print(f"   Average Response: {round(sum(all_times) / len(all_times), 3)}s")
        print(f"   Fastest: {min(all_times)}s")
        print(f"   Slowest: {max(all_times)}s")

    if failures:
        print(f"\n⚠️  Rejections (showing first 5):")
        for f in failures[:5]:
            print(f"   [{f['status_code']}] {f['error']}")

    if inconsistent:
        print(f"\n🚨 Accumulator mismatches:")
        for r in inconsistent[:5]:
            print(f"   {r['order_id']}: expected {r['expected']} observed {r['observed']}")

    print("=" * 70)

    return {
        "total": num_orders,
        "consistent": len(consistent),
        "inconsistent": len(inconsistent),
        "total_time": total_time,
        "results": results,
    }


async def preflight(base_url: str, token: str) -> bool:
    """Check the engine is reachable and the token is accepted."""
    print("\n🧪 Pre-flight checks")
    async with httpx.AsyncClient(headers={"Authorization": f"Bearer {token}"}) as client:
        try:
            health = await client.get(f"{base_url}/health", timeout=10.0)
        except httpx.HTTPError as e:
            print(f"   ❌ Engine not reachable: {e}")
            return False
        print(f"   Health: {health.status_code} {health.json().get('status')}")

        menu = await client.get(f"{base_url}/api/menu", timeout=10.0)
        if menu.status_code != 200:
            print(f"   ❌ Menu request failed: {menu.text}")
            return False
        print(f"   Menu items: {menu.json().get('count')}")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrent Tender Simulation")
    parser.add_argument("--base-url", default=API_BASE_URL, help="Order engine base URL")
    parser.add_argument("--token", default=DEFAULT_TOKEN, help="Bearer token")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--tenders", type=int, default=TENDERS_PER_ORDER, help="Tenders per order")
    parser.add_argument("--duplicates", type=float, default=0.5, help="Share of tenders replayed with the same key")
    parser.add_argument("--skip-checks", action="store_true", help="Skip pre-flight checks")
    args = parser.parse_args()

    if not args.skip_checks and not asyncio.run(preflight(args.base_url, args.token)):
        print("\n❌ Pre-flight checks failed. Is the server running?")
        sys.exit(1)

    summary = asyncio.run(run_simulation(
        base_url=args.base_url,
        token=args.token,
        num_orders=args.orders,
        tenders_per_order=args.tenders,
        duplicate_ratio=args.duplicates,
    ))
    sys.exit(0 if summary["inconsistent"] == 0 else 1)
