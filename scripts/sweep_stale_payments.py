"""Trigger the stale-payment sweep and print its counts as JSON.

Meant for cron: payments that never got a callback and were never polled are
reconciled against the gateway, and expired ones are marked failed.
"""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for the sweep."""

    parser = argparse.ArgumentParser(description="Reconcile payments stuck without a gateway callback.")
    parser.add_argument("--payments-url", default="http://localhost:8001")
    parser.add_argument("--older-than-minutes", type=int, default=10)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.payments_url}/internal/payments/sweep",
        params={"older_than_minutes": args.older_than_minutes, "limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=120.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
