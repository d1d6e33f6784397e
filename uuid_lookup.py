#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Resolve Minecraft usernames to profile UUIDs and store them as claimer targets.

  GET https://api.mojang.com/users/profiles/minecraft/<name>
  -> 2xx {"id": "<uuid>", "name": "<name>"}

- requests.Session with urllib3 Retry for transient 5xx
- Thread pool fan-out, results reported as they complete
- Merges into targets.json (name -> uuid) used by name_claimer.py

Install:
  pip install requests python-dotenv
"""

from __future__ import annotations

import argparse
import concurrent.futures as cf
import dataclasses
import logging
import sys
from typing import Dict, Iterator, List, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from claimer_inputs import (
    DEFAULT_TARGETS_FILE,
    env_default,
    load_env,
    load_targets,
    parse_usernames,
    save_targets,
)

PROFILE_BY_NAME_URL = "https://api.mojang.com/users/profiles/minecraft/{name}"

DEFAULT_TIMEOUT_S = 5.0
DEFAULT_WORKERS = 8

log = logging.getLogger(__name__)


class ResolutionError(RuntimeError):
    pass


@dataclasses.dataclass(frozen=True)
class Resolution:
    username: str
    uuid: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.uuid is not None


# ---------------------------
# HTTP
# ---------------------------

def build_requests_session(timeout_s: float = DEFAULT_TIMEOUT_S, max_retries: int = 2) -> requests.Session:
    """
    requests.Session with retry for transient server errors.
    429 is not retried here: the lookup API throttles per IP for a while and
    a quick retry only burns the budget.
    """
    session = requests.Session()
    retry = Retry(
        total=max_retries,
        backoff_factor=0.5,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=DEFAULT_WORKERS, pool_maxsize=DEFAULT_WORKERS)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.request = _wrap_timeout(session.request, timeout_s)
    return session


def _wrap_timeout(func, timeout_s: float):
    def wrapped(*args, **kwargs):
        kwargs.setdefault("timeout", timeout_s)
        return func(*args, **kwargs)
    return wrapped


def resolve_uuid(session: requests.Session, username: str, *, url: str = PROFILE_BY_NAME_URL) -> str:
    resp = session.get(url.format(name=username))
    if not 200 <= resp.status_code < 300:
        raise ResolutionError(f"Failed to get UUID for {username}: {resp.status_code}")
    try:
        payload = resp.json()
    except ValueError as e:
        raise ResolutionError(f"Failed to get UUID for {username}: invalid JSON ({e})") from e
    uuid = payload.get("id") if isinstance(payload, dict) else None
    if not isinstance(uuid, str) or not uuid:
        raise ResolutionError("UUID not found in response")
    return uuid


def _resolve_one(session: requests.Session, username: str) -> Resolution:
    try:
        return Resolution(username, uuid=resolve_uuid(session, username))
    except ResolutionError as e:
        return Resolution(username, error=str(e))
    except requests.RequestException as e:
        return Resolution(username, error=f"{type(e).__name__}: {e}")


def resolve_many(usernames: Sequence[str],
                 *,
                 session: Optional[requests.Session] = None,
                 workers: int = DEFAULT_WORKERS) -> Iterator[Resolution]:
    """Yield one Resolution per username, in completion order."""
    if not usernames:
        return
    session = session or build_requests_session()
    with cf.ThreadPoolExecutor(max_workers=max(1, min(workers, len(usernames)))) as executor:
        futures = [executor.submit(_resolve_one, session, name) for name in usernames]
        for fut in cf.as_completed(futures):
            yield fut.result()


def merge_resolutions(targets: Dict[str, str], resolutions: Sequence[Resolution]) -> int:
    """Store successful lookups; returns how many names were new or changed."""
    changed = 0
    for r in resolutions:
        if r.ok and targets.get(r.username) != r.uuid:
            targets[r.username] = r.uuid  # type: ignore[assignment]
            changed += 1
    return changed


# ---------------------------
# CLI
# ---------------------------

def configure_logging(verbosity: int) -> logging.Logger:
    level = logging.INFO
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 0:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("uuid_lookup")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Resolve usernames to profile UUIDs and merge them into the claimer targets file.",
    )
    parser.add_argument("usernames", help="Comma-separated usernames, e.g. 'alice,bob'")
    parser.add_argument("--targets-file", default=None,
                        help=f"Targets JSON to update (env: CLAIMER_TARGETS_FILE, default: {DEFAULT_TARGETS_FILE})")
    parser.add_argument("--workers", type=int, default=DEFAULT_WORKERS, help="Concurrent lookups (default: 8)")
    parser.add_argument("--timeout-s", type=float, default=DEFAULT_TIMEOUT_S)
    parser.add_argument("--dry-run", action="store_true", help="Print results without writing the targets file")
    parser.add_argument("--dotenv", default=None, help="Path to .env file")
    parser.add_argument("-v", "--verbose", action="count", default=1, help="Increase verbosity (use -vv for debug)")

    args = parser.parse_args(argv)

    log_ = configure_logging(args.verbose)
    load_env(args.dotenv)
    targets_file = args.targets_file or env_default("CLAIMER_TARGETS_FILE", DEFAULT_TARGETS_FILE)

    if args.workers < 1:
        raise SystemExit("--workers must be >= 1")

    usernames = parse_usernames(args.usernames)
    if not usernames:
        raise SystemExit("No usernames given")

    log_.info("Fetching UUIDs for %s usernames...", len(usernames))
    session = build_requests_session(args.timeout_s)
    results: List[Resolution] = []
    for r in resolve_many(usernames, session=session, workers=args.workers):
        if r.ok:
            log_.info("Found UUID for %s: %s", r.username, r.uuid)
        else:
            log_.warning("Failed to get UUID for %s: %s", r.username, r.error)
        results.append(r)

    if args.dry_run:
        return 0 if any(r.ok for r in results) else 1

    try:
        targets = load_targets(targets_file)
    except ValueError as e:
        log_.error("Configuration error: %s", e)
        return 2
    changed = merge_resolutions(targets, results)
    save_targets(targets_file, targets)
    log_.info("Stored %s new or changed UUID(s); %s total in %s", changed, len(targets), targets_file)
    return 0 if any(r.ok for r in results) else 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
