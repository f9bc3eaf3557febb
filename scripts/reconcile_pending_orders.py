"""Trigger the pending-order expiry sweep and print the report JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for the reconciliation sweep, e.g. from cron."""

    parser = argparse.ArgumentParser(description="Expire card orders left pending past the TTL.")
    parser.add_argument("--store-url", default="http://localhost:8010")
    args = parser.parse_args()

    resp = httpx.post(f"{args.store_url}/reconciliation/expire-pending", timeout=30.0)
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    print(f"expired={len(report['expired_order_ids'])}")


if __name__ == "__main__":
    main()
