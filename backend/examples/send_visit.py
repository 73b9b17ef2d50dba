"""Example client that records a channel play and reads back admin statistics."""
from __future__ import annotations

import argparse
import os

import requests


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Record a sample visit and print statistics")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("IPTV_API_URL", "http://127.0.0.1:8000"),
        help="IPTV backend base URL (default: %(default)s or IPTV_API_URL)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("IPTV_ADMIN_PASSWORD"),
        help="Admin password used to fetch statistics (IPTV_ADMIN_PASSWORD)",
    )
    parser.add_argument("--channel", default="BBC News", help="Channel name to record a play for")
    args = parser.parse_args()
    if not args.password:
        parser.error("An admin password must be supplied via --password or IPTV_ADMIN_PASSWORD")
    return args


def main() -> None:
    args = parse_args()
    visit = requests.post(
        f"{args.api_url}/api/visit",
        json={"userAgent": "send-visit-example/1.0", "channelName": args.channel},
        timeout=10,
    )
    visit.raise_for_status()
    print("Visit recorded:", visit.json())

    login = requests.post(f"{args.api_url}/admin/login", json={"password": args.password}, timeout=10)
    login.raise_for_status()
    headers = {"Authorization": f"Bearer {login.json()['token']}"}

    stats = requests.get(f"{args.api_url}/admin/stats", headers=headers, params={"days": 7}, timeout=10)
    stats.raise_for_status()
    print("Stats:", stats.json())

    summary = requests.get(f"{args.api_url}/admin/stats/summary", headers=headers, timeout=10)
    summary.raise_for_status()
    print("Summary:", summary.json())


if __name__ == "__main__":
    main()
