"""Operator CLI for payment reconciliation.

Talks to the running payments service over HTTP, so it exercises the same
arbiter path as the background poller.
"""

import argparse
import json
import os
import sys

import httpx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trigger and inspect payment reconciliation.")
    parser.add_argument("--base-url", default=os.getenv("PAYMENTS_URL", "http://localhost:8000"))
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--timeout", type=float, default=120.0)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run one poll cycle now")
    run.add_argument("--limit", type=int, default=None)
    run.add_argument("--max-age-hours", type=float, default=None)
    run.add_argument("--delay-ms", type=int, default=None)

    check = sub.add_parser("check", help="query the gateway for one transaction")
    check.add_argument("transaction_id")

    audit = sub.add_parser("audit", help="print the status history of one transaction")
    audit.add_argument("transaction_id")

    sub.add_parser("status", help="show poller status")
    return parser


def request(args: argparse.Namespace) -> httpx.Response:
    headers = {"X-API-Key": args.api_key}
    with httpx.Client(base_url=args.base_url, headers=headers, timeout=args.timeout) as client:
        if args.command == "run":
            body = {
                "limit": args.limit,
                "max_age_hours": args.max_age_hours,
                "rate_limit_delay_ms": args.delay_ms,
            }
            return client.post("/polling/run", json={k: v for k, v in body.items() if v is not None})
        if args.command == "check":
            return client.post(f"/polling/transactions/{args.transaction_id}")
        if args.command == "audit":
            return client.get(f"/payments/audit/{args.transaction_id}")
        return client.get("/polling/status")


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint; exit code 1 on any non-2xx response."""

    args = build_parser().parse_args(argv)
    resp = request(args)
    try:
        body = resp.json()
    except ValueError:
        body = {"raw": resp.text}
    print(json.dumps(body, indent=2, default=str))
    if resp.status_code >= 400:
        print(f"request failed with HTTP {resp.status_code}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
