"""Re-submit a recorded provider payload of one transaction to the webhook.

Only the latest webhook payload whose recorded outcome matches the payment's
current status is replayed, so the replay lands as a `_duplicate` (or applies
an orphan event that never found its payment). Older payloads stay in the
ledger: re-posting them would run corrective transitions and notify the
customer again. Useful after an outage left requests unpaid although the
provider reported success.
"""

import argparse
import json

import httpx

WEBHOOK_SOURCE = "webhook"


def recorded_payloads(history: dict) -> list[tuple[str, str, dict]]:
    """(provider, outcome, raw body) of the webhook entries in a ledger history."""

    payloads = []
    for entry in history.get("entries", []):
        parts = (entry.get("event_type") or "").split("_")
        data = entry.get("event_data") or {}
        raw = data.get("raw_data")
        if len(parts) < 3 or parts[0] != WEBHOOK_SOURCE or not isinstance(raw, dict):
            continue
        if parts[2] == "malformed":
            continue
        payloads.append((data.get("provider") or parts[1], parts[2], raw))
    return payloads


def replay_selection(history: dict) -> tuple[str, dict] | None:
    """The one payload that can be replayed without moving the payment."""

    payment = history.get("payment")
    current = payment.get("status") if payment else None
    for provider, outcome, raw in reversed(recorded_payloads(history)):
        if current is None or outcome == current:
            return provider, raw
    return None


def main() -> None:
    """CLI entrypoint for safe webhook replays."""

    parser = argparse.ArgumentParser(description="Replay the recorded webhook payload of one transaction.")
    parser.add_argument("transaction_id")
    parser.add_argument("--gateway-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    with httpx.Client(base_url=args.gateway_url, timeout=10.0) as client:
        resp = client.get(f"/ledger/{args.transaction_id}", headers={"x-api-key": args.api_key})
        resp.raise_for_status()
        selected = replay_selection(resp.json())
        if selected is None:
            print("No webhook payload matching the current payment status is recorded for this transaction.")
            raise SystemExit(1)

        provider, raw = selected
        print(f"provider={provider} payload={json.dumps(raw)}")
        if args.dry_run:
            print("Dry run only; nothing re-submitted.")
            return
        # Replays skip signature headers; they only pass where verification is optional.
        replay = client.post(f"/webhooks/{provider}", json=raw)
        print(f"-> status_code={replay.status_code} body={replay.text}")


if __name__ == "__main__":
    main()
