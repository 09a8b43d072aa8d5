#!/usr/bin/env python3
"""
lazyctl.py - Control tool for LazyFS

Features:
- Query a running mount's status server
- Dry-run consistency check of every replica against its sidecar (no mount needed)
- One-shot materialization onto the replicas (no mount needed)
- Start/stop/restart lazyfs.py as a subprocess

Usage examples:
  python3 lazyctl.py status --port 8766
  python3 lazyctl.py check --node node1=/srv/a --node node2=/srv/b
  python3 lazyctl.py materialize --seed
  python3 lazyctl.py start ./mnt --status-port 8766
  python3 lazyctl.py stop
"""

import os
import sys
import time
import signal
import argparse
import subprocess

import requests

from lazyutils import add_config_arguments, config_from_args, setup_logging
from lazymat import CONSISTENT, MISSING, REGENERATED, Materializer, seed_replicas

LAZYFS_BIN = os.path.join(os.path.dirname(os.path.abspath(__file__)), "lazyfs.py")
SERVICE_PID = os.path.expanduser("~/.lazyfs/lazyfs.pid")
STATUS_PORT = 8766


# --------------------- status command -------------------------

def cmd_status(args):
    url = f"http://{args.host}:{args.port}/status"
    try:
        r = requests.get(url, timeout=5)
        r.raise_for_status()
        data = r.json()
    except (requests.RequestException, ValueError) as e:
        print("Failed to fetch status:", e)
        return 1
    cfg = data.get("config", {})
    stats = data.get("stats", {})
    print("Server:", data.get("server"), "time:", time.ctime(data.get("ts", 0)))
    print(f"File: {cfg.get('filename')} ({cfg.get('size')} bytes), metadata in {cfg.get('meta_root')}")
    print(f"Runs: {stats.get('runs', 0)} (failed {stats.get('failed_runs', 0)}), "
          f"regenerated {stats.get('regenerated', 0)}, consistent {stats.get('consistent', 0)}, "
          f"missing {stats.get('missing', 0)}")
    report = data.get("last_report")
    if report:
        for res in report.get("results", []):
            reason = f" ({res['reason']})" if res.get("reason") else ""
            print(f"  {res['node']:<12} {res['name']:<20} {res['outcome']}{reason}")
    return 0


# --------------------- local commands -------------------------

def _materializer(args) -> Materializer:
    config = config_from_args(args)
    if config.seed_replicas:
        seed_replicas(config)
    return Materializer(config)


def cmd_check(args):
    results = _materializer(args).inspect()
    for res in results:
        reason = f" ({res.reason})" if res.reason else ""
        print(f"{res.node:<12} {res.name:<20} {res.outcome}{reason}")
    # non-zero when anything would be rewritten
    return 0 if all(r.outcome in (CONSISTENT, MISSING) for r in results) else 3


def cmd_materialize(args):
    mat = _materializer(args)
    try:
        mat.materialize()
    except OSError as e:
        print("Materialization failed:", e)
        return 1
    rep = mat.last_report
    print(f"regenerated {rep.count(REGENERATED)}, consistent {rep.count(CONSISTENT)}, "
          f"missing {rep.count(MISSING)}")
    return 0


# --------------------- service control ------------------------

def _config_flags(args):
    """Re-emit the config flags given to start/restart for the spawned mount."""
    flags = []
    for opt, value in (("--filename", args.filename), ("--size", args.size),
                       ("--nodes-file", args.nodes_file), ("--meta-root", args.meta_root),
                       ("--log-level", args.log_level)):
        if value is not None:
            flags += [opt, str(value)]
    for node in args.node or []:
        flags += ["--node", node]
    if args.seed:
        flags.append("--seed")
    return flags


def _spawn_service(args):
    os.makedirs(os.path.dirname(SERVICE_PID), exist_ok=True)
    cmd = [sys.executable, LAZYFS_BIN, args.mountpoint]
    cmd += _config_flags(args)
    if args.status_port is not None:
        cmd += ["--status-port", str(args.status_port)]
    proc = subprocess.Popen(cmd)
    with open(SERVICE_PID, "w") as f:
        f.write(str(proc.pid))
    print(f"Started lazyfs.py at pid {proc.pid}")
    return 0


def cmd_start(args):
    if os.path.exists(SERVICE_PID):
        print("lazyfs already running? (pid file exists)")
        return 1
    return _spawn_service(args)


def cmd_stop(args):
    try:
        with open(SERVICE_PID) as f:
            pid = int(f.read().strip())
    except (OSError, ValueError) as e:
        print("Stop failed:", e)
        return 1
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print(f"No process {pid}; removing stale pid file")
    os.remove(SERVICE_PID)
    print(f"Stopped lazyfs pid {pid}")
    return 0


def cmd_restart(args):
    cmd_stop(args)
    time.sleep(1)
    return cmd_start(args)


# --------------------- main -------------------------

def build_parser():
    ap = argparse.ArgumentParser(prog="lazyctl", add_help=True)
    sub = ap.add_subparsers(dest="cmd", required=True)

    ss = sub.add_parser("status", help="show status of a running mount")
    ss.add_argument("--host", default="127.0.0.1")
    ss.add_argument("--port", type=int, default=STATUS_PORT)
    ss.set_defaults(func=cmd_status)

    sc = sub.add_parser("check", help="report which replicas are stale (no writes)")
    add_config_arguments(sc)
    sc.set_defaults(func=cmd_check)

    sm = sub.add_parser("materialize", help="bring every replica up to date once")
    add_config_arguments(sm)
    sm.set_defaults(func=cmd_materialize)

    for name, func, text in (("start", cmd_start, "start lazyfs.py as service"),
                             ("restart", cmd_restart, "restart lazyfs service")):
        sp = sub.add_parser(name, help=text)
        sp.add_argument("mountpoint")
        add_config_arguments(sp)
        sp.add_argument("--status-port", type=int, default=None)
        sp.set_defaults(func=func)

    sstop = sub.add_parser("stop", help="stop lazyfs service")
    sstop.set_defaults(func=cmd_stop)
    return ap


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(getattr(args, "log_level", None) or "WARNING")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
