#!/usr/bin/env python3
"""Load test for the bulk ingestion rate limit.

RUN:  python scripts/load_test_rate_limit.py
      python scripts/load_test_rate_limit.py --base-url http://localhost:8000 --token <jwt>

Sends TOTAL_REQUESTS small bulk batches in rapid succession and prints
how many were admitted (200) vs. throttled (429), plus the reset hint
the last 429 carried.

Without --base-url the app is driven in-process through TestClient and
a token is minted with the local dev key, so no server or identity
provider is needed.  Against a real server pass a token it accepts.

Not a production load testing tool; use locust, k6 or wrk for that.
"""

from __future__ import annotations

import argparse
import time
import uuid

import httpx

TOTAL_REQUESTS = 100


def _batch(user_id: str) -> dict:
    return {
        "updates": [
            {
                "id": str(uuid.uuid4()),
                "type": "COURSE_STARTED",
                "user_id": user_id,
                "entity_id": "load-test-course",
                "entity_type": "course",
                "timestamp": int(time.time() * 1000),
                "metadata": {},
            }
        ]
    }


def _client(base_url: str | None) -> httpx.Client:
    if base_url:
        return httpx.Client(base_url=base_url, timeout=10)
    from fastapi.testclient import TestClient

    from progress_sync.main import app

    return TestClient(app)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--base-url", default=None)
    parser.add_argument("--token", default=None)
    parser.add_argument("--user-id", default="load-test-user")
    parser.add_argument("-n", "--requests", type=int, default=TOTAL_REQUESTS)
    args = parser.parse_args()

    token = args.token
    if token is None:
        from progress_sync.services import token_service

        token = token_service.create_access_token(sub=args.user_id)

    print("Rate Limit Load Test")
    print("=" * 50)
    print(f"Target: {args.base_url or 'in-process'} POST /v1/progress/bulk")
    print(f"Total requests: {args.requests}")
    print()

    results: dict[int, int] = {}
    last_reset: str | None = None
    limit: str | None = None
    start = time.monotonic()

    with _client(args.base_url) as client:
        for i in range(args.requests):
            resp = client.post(
                "/v1/progress/bulk",
                json=_batch(args.user_id),
                headers={"Authorization": f"Bearer {token}"},
            )
            results[resp.status_code] = results.get(resp.status_code, 0) + 1
            limit = resp.headers.get("X-RateLimit-Limit", limit)
            if resp.status_code == 429:
                last_reset = resp.headers.get("X-RateLimit-Reset")

            if (i + 1) % 20 == 0:
                print(f"  Sent {i + 1}/{args.requests} requests...")

    elapsed = time.monotonic() - start
    allowed = results.get(200, 0)
    throttled = results.get(429, 0)
    other = sum(v for k, v in results.items() if k not in (200, 429))

    print()
    print(f"Results after {args.requests} requests ({elapsed:.2f}s):")
    print("-" * 40)
    print(f"  Allowed  (200): {allowed:>4}")
    print(f"  Throttled(429): {throttled:>4}")
    if other:
        print(f"  Other:          {other:>4}  {sorted(results)}")
    print()
    print(f"Window limit: {limit or 'unknown'}")
    if last_reset:
        print(f"Window reset at (epoch s): {last_reset}")

    if throttled == 0:
        print("WARNING: No requests were throttled.")


if __name__ == "__main__":
    main()
