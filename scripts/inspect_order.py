"""Print an order and its status timeline, for support escalations."""

import argparse
import json

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="Show one order and its status history.")
    parser.add_argument("order_id")
    parser.add_argument("--store-url", default="http://localhost:8010")
    args = parser.parse_args()

    with httpx.Client(base_url=args.store_url, timeout=10.0) as client:
        order = client.get(f"/orders/{args.order_id}")
        if order.status_code == 404:
            raise SystemExit(f"order {args.order_id} not found")
        order.raise_for_status()
        timeline = client.get(f"/orders/{args.order_id}/timeline")
        timeline.raise_for_status()

    print(json.dumps({"order": order.json(), "timeline": timeline.json()}, indent=2, default=str))


if __name__ == "__main__":
    main()
