"""Simulated barcode scanner.

Posts scan events to a running scan service the way the hardware scanner
does, optionally switching the scanner mode first, and prints each result.

Usage:
  python scripts/simulate_scan.py 4006381333931 --count 3
  python scripts/simulate_scan.py 4006381333931 --mode INCREMENT --quantity 5
"""
import argparse
import sys
import time

import httpx

MODES = ("INCREMENT", "DECREMENT", "DETAILS")


def describe(response: httpx.Response) -> str:
    if response.status_code == 404:
        return "not found"
    if response.status_code != 200:
        return f"server error ({response.status_code}): {response.text}"
    body = response.json()
    status = "ok" if body.get("success") else "rejected"
    return (
        f"{status}: {body.get('name')} [{body.get('category')}] "
        f"{body.get('action')} {body.get('quantityChanged')} -> stock {body.get('newStock')} "
        f"({body.get('stockHealth')}) - {body.get('message')}"
    )


def main():
    p = argparse.ArgumentParser()
    p.add_argument("barcodes", nargs="+", help="Barcodes to scan, in order")
    p.add_argument("--url", default="http://127.0.0.1:8000/api", help="Base URL of the scan API")
    p.add_argument("--mode", choices=MODES, help="Set the scanner mode before scanning")
    p.add_argument("--quantity", type=int, default=1, help="Quantity used with --mode")
    p.add_argument("--count", type=int, default=1, help="How many times to scan each barcode")
    p.add_argument("--interval", type=float, default=0.0, help="Seconds to wait between scans")
    args = p.parse_args()

    with httpx.Client(base_url=args.url, timeout=15.0) as client:
        try:
            if args.mode:
                resp = client.put("/scanner-mode", json={"mode": args.mode, "quantity": args.quantity})
                if resp.status_code != 200:
                    raise SystemExit(f"Failed to set scanner mode: {resp.status_code} {resp.text}")
                print(f"Scanner mode: {resp.json()}")

            for barcode in args.barcodes:
                for _ in range(args.count):
                    resp = client.post("/scan", json={"barcode": barcode})
                    print(f"{barcode}: {describe(resp)}")
                    if args.interval:
                        time.sleep(args.interval)
        except httpx.HTTPError as exc:
            print(f"Network error: {exc}", file=sys.stderr)
            raise SystemExit(1)


if __name__ == "__main__":
    main()
