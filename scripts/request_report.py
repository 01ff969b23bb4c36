#!/usr/bin/env python3
"""Request a relay quality report and wait for it.

Posts a report request, prints the payment instructions (send the payment
with the printed secret as memo), then polls the status endpoint until the
CSV is ready or the job fails.

Usage:
  python scripts/request_report.py node.example.com 2024-06-01 pokt1... \
      --base-url http://localhost:8000 --out report.csv
"""
import argparse
import sys
import time

import httpx

POLL_SECONDS = 5.0


def request_report(client: httpx.Client, domain: str, date: str, payor: str) -> dict:
    res = client.post("/requests", json={"domain": domain, "date": date, "payorAddress": payor})
    if res.status_code != 200:
        raise SystemExit(f"request rejected ({res.status_code}): {res.json().get('error')}")
    return res.json()


def wait_for_report(client: httpx.Client, status_url: str, poll_seconds: float, max_wait: float):
    deadline = time.monotonic() + max_wait
    while time.monotonic() < deadline:
        res = client.get(status_url)
        if res.status_code == 200:
            return res
        if res.status_code == 202:
            body = res.json()
            print(f"status: {body['status']} - {body['message']}")
            time.sleep(poll_seconds)
            continue
        raise SystemExit(f"report failed ({res.status_code}): {res.json().get('error')}")
    raise SystemExit("gave up waiting for the report")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("domain")
    parser.add_argument("date", help="YYYY-MM-DD")
    parser.add_argument("payor", help="address the payment will be sent from")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--out", help="write the CSV here instead of stdout")
    parser.add_argument("--poll", type=float, default=POLL_SECONDS)
    parser.add_argument("--max-wait", type=float, default=600.0)
    args = parser.parse_args(argv)

    with httpx.Client(base_url=args.base_url, timeout=30.0) as client:
        created = request_report(client, args.domain, args.date, args.payor)
        print(created["message"])
        print(f"secret: {created['secret']}")
        res = wait_for_report(client, created["statusUrl"], args.poll, args.max_wait)

    if args.out:
        with open(args.out, "w") as fh:
            fh.write(res.text)
        print(f"saved {args.out}")
    else:
        sys.stdout.write(res.text)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("request_report: exiting")
