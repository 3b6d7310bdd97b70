# scripts/ops/requeue_pairing.py
"""
Re-enqueue exact pairing for every ORPHAN_OPEN OUT in a zone.
Useful after loading a late batch of INs. Re-pairing a resolved OUT is a no-op.
Usage: python scripts/ops/requeue_pairing.py --zone omaha-1
"""

import argparse
import requests

BACKEND_URL = "http://localhost:8080/api/v1"
PAGE = 1000


def main():
    parser = argparse.ArgumentParser(description="Requeue pairing for orphan OUTs")
    parser.add_argument("--url", default=BACKEND_URL)
    parser.add_argument("--zone", default=None, help="all zones when omitted")
    parser.add_argument("--api-key", default=None)
    args = parser.parse_args()
    headers = {"X-API-Key": args.api_key} if args.api_key else {}

    queued, offset = 0, 0
    while True:
        params = {"status": "ORPHAN_OPEN", "direction": "OUT", "limit": PAGE, "offset": offset}
        if args.zone:
            params["zone"] = args.zone
        resp = requests.get(f"{args.url}/orphans", params=params, headers=headers, timeout=30)
        resp.raise_for_status()
        page = resp.json()
        for event in page:
            requests.post(f"{args.url}/jobs", json={"kind": "pair", "payload": {"out_id": event["id"]}},
                          headers=headers, timeout=10).raise_for_status()
            queued += 1
        if len(page) < PAGE:
            break
        offset += PAGE
    print(f"🔁 Queued {queued} pair jobs")


if __name__ == "__main__":
    main()
