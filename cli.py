from __future__ import annotations

import argparse
import json
import os
import sys
import time

import requests

TERMINAL = {"Succeeded", "Failed", "RolledBack"}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _watch(session: requests.Session, base: str, rollout_id: str, interval_s: float) -> dict:
    while True:
        st = session.get(f"{base}/rollouts/{rollout_id}", timeout=10).json()
        print(f"{st['state']}: {st['message']}", file=sys.stderr)
        if st["state"] in TERMINAL:
            return st
        time.sleep(interval_s)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Release Rollout Controller CLI")
    p.add_argument("--api", default=os.getenv("RRC_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("RRC_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("RRC_ADMIN_PASSWORD", "change-me"))
    sub = p.add_subparsers(dest="cmd", required=True)

    s_roll = sub.add_parser("rollout", help="Start a rollout")
    s_roll.add_argument("--target", required=True)
    s_roll.add_argument("--revision", required=True, help="Source revision to deploy")
    s_roll.add_argument("--replicas", type=int, required=True, help="Desired replica count")
    s_roll.add_argument("--max-unavailable", type=int, default=0)
    s_roll.add_argument("--max-surge", type=int, default=1)
    s_roll.add_argument("--health-timeout-s", type=float, default=None)
    s_roll.add_argument("--watch", action="store_true", help="Follow the rollout until it ends")

    mode = s_roll.add_mutually_exclusive_group()
    mode.add_argument("--auto-rollback", dest="auto_rollback", action="store_true", default=None)
    mode.add_argument("--no-auto-rollback", dest="auto_rollback", action="store_false")

    sub.add_parser("list", help="List rollouts")

    s_hist = sub.add_parser("history", help="List persisted rollout records")
    s_hist.add_argument("--target", default=None)
    s_hist.add_argument("--limit", type=int, default=20)

    for name in ("status", "pause", "resume", "cancel"):
        s = sub.add_parser(name, help=f"{name.capitalize()} a rollout")
        s.add_argument("rollout_id")

    s_res = sub.add_parser("resolve", help="Resolve a source revision to an image digest")
    s_res.add_argument("revision")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--rollout", default=None, help="Only events of this rollout")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    session = requests.Session()
    session.auth = (args.user, args.password)

    if args.cmd == "rollout":
        payload = {
            "target": args.target,
            "source_revision": args.revision,
            "desired_replicas": args.replicas,
            "max_unavailable": args.max_unavailable,
            "max_surge": args.max_surge,
            "auto_rollback": args.auto_rollback,
            "health_timeout_s": args.health_timeout_s,
        }
        r = session.post(f"{base}/rollouts", json=payload, timeout=30)
        body = r.json()
        if r.ok and args.watch:
            body = _watch(session, base, body["id"], interval_s=2.0)
            _print(body)
            return 0 if body["state"] == "Succeeded" else 1
        _print(body)
        return 0 if r.ok else 1

    if args.cmd == "list":
        _print(session.get(f"{base}/rollouts", timeout=10).json())
        return 0

    if args.cmd == "history":
        params: dict[str, object] = {"limit": args.limit}
        if args.target:
            params["target"] = args.target
        _print(session.get(f"{base}/rollouts/history", params=params, timeout=10).json())
        return 0

    if args.cmd == "status":
        r = session.get(f"{base}/rollouts/{args.rollout_id}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd in {"pause", "resume", "cancel"}:
        r = session.post(f"{base}/rollouts/{args.rollout_id}/{args.cmd}", timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "resolve":
        r = session.get(f"{base}/artifacts/{args.revision}", timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        if args.rollout:
            url = f"{base}/rollouts/{args.rollout}/events"
        else:
            url = f"{base}/events"
        _print(session.get(url, params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
