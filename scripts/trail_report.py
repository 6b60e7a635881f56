"""Fetch and print one payment with its transaction trail."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for inspecting a reconciled payment."""

    parser = argparse.ArgumentParser(description="Fetch a payment and its trail entries.")
    parser.add_argument("payment_id")
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()

    resp = httpx.get(f"{args.base_url}/payments/{args.payment_id}", timeout=10.0)
    resp.raise_for_status()
    payment = resp.json()
    trail_total = sum(entry["amount_minor"] for entry in payment["trail"])
    print(json.dumps(payment, indent=2))
    print(f"trail_entries={len(payment['trail'])} trail_total_minor={trail_total}")


if __name__ == "__main__":
    main()
