#!/usr/bin/env python3
"""
Smoke test for a running ImageForge API.
Checks balance, estimate, one generation and the refund-on-failure path.
"""
import asyncio
import sys

import httpx

API_BASE = "http://localhost:8000/api/v1"
TIMEOUT = 180.0
USER_ID = 900001


async def main() -> int:
    headers = {"X-User-Id": str(USER_ID)}
    failures = 0

    async with httpx.AsyncClient(timeout=TIMEOUT) as client:
        balance = (await client.get(f"{API_BASE}/tokens/balance", headers=headers)).json()
        print(f"Balance: {balance['tokens']}")

        estimate = await client.post(
            f"{API_BASE}/tokens/estimate",
            headers=headers,
            json={"style": "realistic", "platform": "instagram"},
        )
        cost = estimate.json()["estimated_cost"]
        print(f"Estimated cost: {cost}")

        resp = await client.post(
            f"{API_BASE}/generate",
            headers=headers,
            json={"prompt": "A lighthouse on a cliff at dawn, watercolor"},
        )
        if resp.status_code == 200:
            data = resp.json()
            ok = data["token_cost"] == cost and data["new_balance"] == balance["tokens"] - cost
            print(f"{'PASS' if ok else 'FAIL'} generate -> {data['asset_urls']}")
            failures += 0 if ok else 1
        else:
            print(f"FAIL generate -> {resp.status_code} {resp.text}")
            failures += 1

        # Unreachable source image: provider-error, tokens must come back
        before = (await client.get(f"{API_BASE}/tokens/balance", headers=headers)).json()["tokens"]
        resp = await client.post(
            f"{API_BASE}/generate",
            headers=headers,
            json={
                "mode": "transform",
                "prompt": "make it snowy",
                "source_image": "https://invalid.example/missing.png",
            },
        )
        after = (await client.get(f"{API_BASE}/tokens/balance", headers=headers)).json()["tokens"]
        ok = resp.status_code >= 400 and before == after
        print(f"{'PASS' if ok else 'FAIL'} refund on failure -> {resp.status_code}, {before} -> {after}")
        failures += 0 if ok else 1

    return failures


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
