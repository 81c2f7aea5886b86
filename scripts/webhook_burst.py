"""Fire the same provider webhook concurrently to exercise idempotency.

Every response should report the same payment status, and the ledger should
show one applied entry followed by duplicates.
"""

import argparse
import asyncio
import statistics
import time
from collections import Counter

import httpx


async def send_one(client: httpx.AsyncClient, body: dict):
    """Send one webhook and return (status_code, payment_status, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post("/webhooks/kkiapay", json=body)
        latency = (time.perf_counter() - started) * 1000
        status = resp.json().get("paymentStatus") if resp.status_code == 200 else None
        return resp.status_code, status, latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return 599, None, latency


async def run(total: int, concurrency: int, base_url: str, transaction_id: str, request_id: str, amount: int):
    """Send `total` copies of one success webhook with bounded concurrency."""

    body = {
        "transactionId": transaction_id,
        "isPaymentSucces": True,
        "event": "transaction.success",
        "partnerId": request_id,
        "amount": amount,
    }
    sem = asyncio.Semaphore(concurrency)
    results = []

    async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as client:
        async def worker():
            async with sem:
                return await send_one(client, body)

        tasks = [asyncio.create_task(worker()) for _ in range(total)]
        for task in asyncio.as_completed(tasks):
            results.append(await task)

    codes = Counter(code for code, _, _ in results)
    statuses = Counter(status for _, status, _ in results)
    lats = sorted(latency for _, _, latency in results)
    print(f"total={total}")
    print(f"status_codes={dict(codes)}")
    print(f"payment_statuses={dict(statuses)}")
    print(f"p95_ms={lats[min(len(lats) - 1, int(0.95 * len(lats)))]:.2f}")
    print(f"avg_ms={statistics.mean(lats):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("transaction_id")
    parser.add_argument("--request-id", required=True)
    parser.add_argument("--amount", type=int, default=199000)
    parser.add_argument("--total", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=20)
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.transaction_id, args.request_id, args.amount))
