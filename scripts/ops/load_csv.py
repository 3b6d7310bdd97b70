# scripts/ops/load_csv.py
"""
Submit an LPR CSV export as an upload and optionally wait for it to finish.
Usage: python scripts/ops/load_csv.py export.csv [--mapping omaha] [--wait]
"""

import argparse
import sys
import time
import uuid
import requests

BACKEND_URL = "http://localhost:8080/api/v1"


def main():
    parser = argparse.ArgumentParser(description="Upload an LPR CSV export")
    parser.add_argument("path")
    parser.add_argument("--url", default=BACKEND_URL)
    parser.add_argument("--mapping", default=None, help="generic | omaha (detected from headers when omitted)")
    parser.add_argument("--upload-id", default=None)
    parser.add_argument("--wait", action="store_true", help="poll until the upload finishes")
    parser.add_argument("--api-key", default=None)
    args = parser.parse_args()

    with open(args.path, encoding="utf-8") as f:
        csv_data = f.read()
    upload_id = args.upload_id or str(uuid.uuid4())
    headers = {"X-API-Key": args.api_key} if args.api_key else {}

    resp = requests.post(f"{args.url}/uploads/{upload_id}/ingest",
                         json={"csv_data": csv_data, "mapping": args.mapping},
                         headers=headers, timeout=60)
    resp.raise_for_status()
    print(f"📥 Upload {upload_id} queued as job {resp.json()['id']}")
    if not args.wait:
        return

    while True:
        upload = requests.get(f"{args.url}/uploads/{upload_id}", headers=headers, timeout=10).json()
        if upload["status"] in ("COMPLETED", "ERROR", "CANCELLED"):
            break
        time.sleep(1)
    icon = "✅" if upload["status"] == "COMPLETED" else "❌"
    print(f"{icon} {upload['status']}: inserted={upload['rows_inserted']} "
          f"duplicates={upload['rows_duplicate']} errored={upload['rows_errored']}")
    for err in (upload.get("errors") or [])[:20]:
        print(f"   row {err['row']}: {err['reason']}")
    if upload["status"] != "COMPLETED":
        sys.exit(1)


if __name__ == "__main__":
    main()
