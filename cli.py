from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _table(rows: list[dict]) -> None:
    cols = ["ID", "Name", "Image", "Status", "Ports"]
    widths = {c: max([len(c)] + [len(str(r.get(c, ""))[:40]) for r in rows]) for c in cols}
    print("  ".join(c.ljust(widths[c]) for c in cols))
    for r in rows:
        values = {c: str(r.get(c, "")) for c in cols}
        values["ID"] = values["ID"][:12]
        print("  ".join(values[c][:40].ljust(widths[c]) for c in cols))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Desired Container Reconciler CLI")
    p.add_argument("--api", default=os.getenv("DCR_API", "http://localhost:8080"), help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_ls = sub.add_parser("containers", help="List containers")
    s_ls.add_argument("--json", action="store_true", help="Print raw JSON")

    s_up = sub.add_parser("upload", help="Upload a manifest and reconcile")
    s_up.add_argument("file", help="Path to a .yaml/.yml manifest")

    for action in ("start", "stop", "restart"):
        s_act = sub.add_parser(action, help=f"{action.capitalize()} a container")
        s_act.add_argument("container", help="Container name or id")

    s_rm = sub.add_parser("delete", help="Remove a container")
    s_rm.add_argument("container", help="Container name or id")

    s_logs = sub.add_parser("logs", help="Show container logs")
    s_logs.add_argument("container", help="Container name or id")
    s_logs.add_argument("-f", "--follow", action="store_true", help="Keep streaming new lines")

    sub.add_parser("manifest", help="Show the latest accepted manifest")
    sub.add_parser("reconcile", help="Run drift correction now")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "containers":
        r = requests.get(f"{base}/api/containers", timeout=10)
        if r.headers.get("X-DCR-Stale") == "true":
            print("warning: container runtime unreachable, showing last known state", file=sys.stderr)
        if args.json or not r.ok:
            _print(r.json())
        else:
            _table(r.json())
        return 0 if r.ok else 1

    if args.cmd == "upload":
        with open(args.file, "rb") as fh:
            files = {"yamlFile": (os.path.basename(args.file), fh, "application/x-yaml")}
            r = requests.post(f"{base}/upload", files=files, timeout=600)
        _print(r.json())
        return 0 if r.status_code == 200 else 1

    if args.cmd in {"start", "stop", "restart"}:
        r = requests.post(f"{base}/api/containers/{args.container}/{args.cmd}", timeout=120)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}/api/containers/{args.container}", timeout=120)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "logs":
        if not args.follow:
            r = requests.get(f"{base}/api/containers/{args.container}/logs", timeout=60)
            if not r.ok:
                _print(r.json())
                return 1
            print(r.json()["logs"])
            return 0
        with requests.get(f"{base}/api/containers/{args.container}/logs/stream", stream=True, timeout=(10, None)) as r:
            if not r.ok:
                _print(r.json())
                return 1
            try:
                for line in r.iter_lines(decode_unicode=True):
                    print(line, flush=True)
            except KeyboardInterrupt:
                pass
        return 0

    if args.cmd == "manifest":
        r = requests.get(f"{base}/api/manifest", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "reconcile":
        r = requests.post(f"{base}/api/reconcile", timeout=600)
        _print(r.json())
        return 0 if r.status_code == 200 else 1

    if args.cmd == "events":
        _print(requests.get(f"{base}/api/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
