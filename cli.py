from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="routesync controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="Controller API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show controller status")
    sub.add_parser("routes", help="List tracked routes")

    s_ev = sub.add_parser("events", help="Show journaled events")
    s_ev.add_argument("--limit", type=int, default=20)

    sub.add_parser("reconcile", help="Run one reconciliation pass now")

    s_serve = sub.add_parser("serve", help="Run the controller and its API")
    s_serve.add_argument("--host", default="0.0.0.0")
    s_serve.add_argument("--port", type=int, default=8000)

    args = p.parse_args(argv)

    if args.cmd == "serve":
        import uvicorn

        uvicorn.run("main:app", host=args.host, port=args.port)
        return 0

    base = args.api.rstrip("/")

    try:
        if args.cmd == "status":
            r = requests.get(f"{base}/status", timeout=10)
        elif args.cmd == "routes":
            r = requests.get(f"{base}/routes", timeout=10)
        elif args.cmd == "events":
            r = requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10)
        elif args.cmd == "reconcile":
            r = requests.post(f"{base}/reconcile", timeout=60)
        else:
            return 2
    except requests.RequestException as e:
        print(f"error: cannot reach {base}: {e}", file=sys.stderr)
        return 1

    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
