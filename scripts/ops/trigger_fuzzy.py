# scripts/ops/trigger_fuzzy.py
"""
Queue a fuzzy sweep for one zone, or for every zone with unresolved events.
Usage: python scripts/ops/trigger_fuzzy.py [--zone omaha-1] [--min-score 0.9]
"""

import argparse
import requests

BACKEND_URL = "http://localhost:8080/api/v1"


def main():
    parser = argparse.ArgumentParser(description="Trigger fuzzy matching sweeps")
    parser.add_argument("--url", default=BACKEND_URL)
    parser.add_argument("--zone", default=None)
    parser.add_argument("--min-score", type=float, default=None,
                        help="override the zone's fuzzy_threshold for this sweep")
    parser.add_argument("--api-key", default=None)
    args = parser.parse_args()
    headers = {"X-API-Key": args.api_key} if args.api_key else {}

    if args.zone:
        zones = [args.zone]
    else:
        resp = requests.get(f"{args.url}/orphans/summary", headers=headers, timeout=30)
        resp.raise_for_status()
        zones = [z["zone"] for z in resp.json() if z["open_in"] and z["orphan_out"]]

    for zone in zones:
        payload = {"zone": zone}
        if args.min_score is not None:
            payload["min_score"] = args.min_score
        resp = requests.post(f"{args.url}/jobs", json={"kind": "fuzzy-sweep", "payload": payload},
                             headers=headers, timeout=10)
        resp.raise_for_status()
        print(f"🔍 {zone}: sweep job {resp.json()['id']}")
    if not zones:
        print("Nothing to sweep")


if __name__ == "__main__":
    main()
