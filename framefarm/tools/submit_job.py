#!/usr/bin/env python3
"""
submit_job.py

Validates a job payload and drops it into the intake queue.

Usage:
  python3 -m framefarm.tools.submit_job path/to/payload.json [--name my-job] [--base-dir generations]

Exit codes:
  0 = submitted
  1 = invalid payload / already queued
"""
from __future__ import annotations

import argparse
import json
import pathlib
import sys
from typing import Any, List, Optional

from framefarm.services.lease.lock import LeaseLock
from framefarm.services.queue.transitions import QueueManager
from framefarm.shared.job_payload import parse_payload
from framefarm.shared.settings import load_env, resolve_generations_dir


def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def submit(payload_path: pathlib.Path, base_dir: pathlib.Path, name: Optional[str] = None) -> pathlib.Path:
    with open(payload_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    parse_payload(data)
    queue = QueueManager(base_dir, LeaseLock())
    queue.ensure_dirs()
    return queue.submit(data, name or payload_path.stem)


def main(argv: List[str]) -> int:
    parser = argparse.ArgumentParser(description="Submit a job payload to the intake queue")
    parser.add_argument("payload", type=pathlib.Path)
    parser.add_argument("--name", help="Job name (defaults to the payload file name)")
    parser.add_argument("--base-dir", type=pathlib.Path)
    parser.add_argument("--env-file", type=pathlib.Path, default=pathlib.Path(".env"))
    args = parser.parse_args(argv)

    load_env(args.env_file)
    base_dir = args.base_dir or resolve_generations_dir()
    try:
        dst = submit(args.payload, base_dir, args.name)
    except (OSError, ValueError) as e:
        eprint(f"ERROR: {e}")
        return 1
    print(f"OK: queued {dst}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
