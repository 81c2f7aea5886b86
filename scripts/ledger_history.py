"""Fetch and print the ledger history of one transaction."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for transaction diagnosis."""

    parser = argparse.ArgumentParser(description="Fetch ledger history for one provider transaction.")
    parser.add_argument("transaction_id")
    parser.add_argument("--gateway-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.gateway_url}/ledger/{args.transaction_id}",
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
