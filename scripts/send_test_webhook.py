"""Send a signed gateway callback to a local payments service.

Useful for exercising duplicate delivery and failure-then-success ordering
without a real handset. Signs with the same digest scheme the gateway uses.
Run from the repo root so the service `.env` is picked up.
"""

import argparse
import json
import os
from datetime import datetime, timedelta, timezone

import httpx

from cvpay.services.gateway.signing import compute_digest


SIGNED_FIELDS = ["transid", "order_id", "reference", "resultcode", "result", "amount"]


def build_request(order_id: str, resultcode: str, transid: str, amount: str, secret: str) -> tuple[dict, dict]:
    """Return (headers, body) for one callback."""

    body = {
        "result": "SUCCESS" if resultcode == "000" else "FAIL",
        "resultcode": resultcode,
        "order_id": order_id,
        "transid": transid,
        "reference": f"REF-{transid}",
        "channel": "MPESA-TZ",
        "msisdn": "255700000000",
        "amount": amount,
    }
    timestamp = datetime.now(timezone(timedelta(hours=3))).isoformat(timespec="seconds")
    headers = {
        "Timestamp": timestamp,
        "Digest": compute_digest(secret, timestamp, body, SIGNED_FIELDS),
        "Signed-Fields": ",".join(SIGNED_FIELDS),
    }
    return headers, body


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a signed payment callback.")
    parser.add_argument("--payments-url", default="http://localhost:8001")
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--resultcode", default="000")
    parser.add_argument("--transid", default="TXN-LOCAL-1")
    parser.add_argument("--amount", default="5000")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same callback N times")
    parser.add_argument("--secret", default=os.getenv("SELCOM_API_SECRET", ""))
    args = parser.parse_args()

    headers, body = build_request(args.order_id, args.resultcode, args.transid, args.amount, args.secret)
    for attempt in range(1, args.repeat + 1):
        resp = httpx.post(f"{args.payments_url}/payments/webhook", headers=headers, json=body, timeout=10.0)
        print(f"attempt={attempt} status={resp.status_code} body={json.dumps(resp.json())}")


if __name__ == "__main__":
    main()
