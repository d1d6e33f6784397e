#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Async deletion claimer for Minecraft names.

Polls the session server for every tracked profile UUID and, as soon as a
profile lookup comes back empty (HTTP 204), races a name-change request for
the matching username:
  GET https://sessionserver.mojang.com/session/minecraft/profile/<uuid>
  PUT https://api.minecraftservices.com/minecraft/profile/name/<name>
      Authorization: Bearer <token>

Features:
- Async HTTP with aiohttp, one ClientSession per local source address
- Random identity per request (or sticky per target) to spread request volume
- Unordered fan-out: every target checked concurrently, results streamed as they land
- Rate-limit aware classification (429 never triggers a claim)
- Graceful stop at round boundaries (SIGINT/SIGTERM or --max-rounds)

Install:
  pip install aiohttp python-dotenv colorama
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import ipaddress
import itertools
import logging
import random
import signal
import socket
import sys
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

import aiohttp

from claimer_inputs import (
    DEFAULT_ADDRESS_COUNT,
    DEFAULT_SUBNET_PREFIX,
    DEFAULT_TARGETS_FILE,
    DEFAULT_TOKENS_FILE,
    env_default,
    generate_addresses,
    load_addresses,
    load_env,
    load_targets,
    load_tokens,
)
from console import ConsoleSink, ensure_init

DEFAULT_LOOKUP_URL = "https://sessionserver.mojang.com/session/minecraft/profile/{uuid}"
DEFAULT_CLAIM_URL = "https://api.minecraftservices.com/minecraft/profile/name/{name}"

HTTP_OK = 200
HTTP_NO_CONTENT = 204
HTTP_TOO_MANY_REQUESTS = 429

DEFAULT_RATE_LIMIT_STATUSES: FrozenSet[int] = frozenset({HTTP_TOO_MANY_REQUESTS})

log = logging.getLogger(__name__)


# ---------------------------
# Errors
# ---------------------------

class ClaimerError(RuntimeError):
    pass


class PoolConstructionError(ClaimerError):
    """A source address could not be turned into a network identity."""


class MissingCredentialError(ClaimerError):
    """A claim was requested but no bearer token is configured."""


class TransportError(ClaimerError):
    """Timeout, refused/reset connection, DNS failure: no HTTP status to report."""


# ---------------------------
# Policies + data model
# ---------------------------

class IdentityPolicy(str, enum.Enum):
    PER_REQUEST = "per-request"
    PER_TARGET = "per-target"


class CredentialPolicy(str, enum.Enum):
    FIRST = "first"
    ROUND_ROBIN = "round-robin"


class ResultKind(str, enum.Enum):
    RATE_LIMITED = "rate-limited"
    CLAIMED = "claimed"
    CLAIM_FAILED = "claim-failed"
    TAKEN = "taken"
    ERROR = "error"


class LoopState(str, enum.Enum):
    IDLE = "idle"
    IN_FLIGHT = "in-flight"
    DRAINING = "draining"


@dataclass(frozen=True)
class PoolSettings:
    timeout_s: float = 10.0
    keepalive_s: float = 60.0
    idle_timeout_s: float = 60.0
    per_host_limit: int = 50
    user_agent: str = "Mozilla/5.0 (compatible; name_claimer/1.0)"


@dataclass(frozen=True)
class NetworkIdentity:
    address: str
    session: aiohttp.ClientSession


@dataclass(frozen=True)
class RoundResult:
    name: str
    identifier: str
    status: str
    important: bool
    kind: ResultKind


ResultSink = Callable[[RoundResult], None]


# ---------------------------
# Identity pool
# ---------------------------

def parse_source_address(raw: str) -> str:
    try:
        return str(ipaddress.ip_address(raw.strip()))
    except ValueError as e:
        raise PoolConstructionError(f"Invalid source address {raw!r}: {e}") from e


def keepalive_socket_factory(keepalive_s: float) -> Callable[[tuple], socket.socket]:
    """Socket factory for TCPConnector: SO_KEEPALIVE with the first probe after keepalive_s idle seconds."""
    idle = max(1, int(keepalive_s))

    def factory(addr_info: tuple) -> socket.socket:
        family, type_, proto = addr_info[0], addr_info[1], addr_info[2]
        sock = socket.socket(family=family, type=type_, proto=proto)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, idle)
        elif hasattr(socket, "TCP_KEEPALIVE"):
            # macOS spells it differently
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, idle)
        return sock

    return factory


def build_session(address: str, settings: PoolSettings) -> aiohttp.ClientSession:
    """
    One ClientSession bound to `address`. Must be called with a running loop.
    aiohttp has no separate idle-connection cap, so per_host_limit bounds all
    connections to one host through this identity (active and pooled).
    """
    family = socket.AF_INET6 if ipaddress.ip_address(address).version == 6 else socket.AF_INET
    connector = aiohttp.TCPConnector(
        limit=0,
        limit_per_host=settings.per_host_limit,
        keepalive_timeout=settings.idle_timeout_s,
        local_addr=(address, 0),
        family=family,
        socket_factory=keepalive_socket_factory(settings.keepalive_s),
        ssl=True,
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=settings.timeout_s),
        headers={"User-Agent": settings.user_agent},
    )


class IdentityPool:
    """
    Fixed set of network identities, shared by every in-flight request.
    Immutable after construction; selection is uniform random per call.
    """

    def __init__(self, identities: Sequence[NetworkIdentity], *, rng: Optional[random.Random] = None):
        if not identities:
            raise PoolConstructionError("Identity pool needs at least one source address")
        self._identities: Tuple[NetworkIdentity, ...] = tuple(identities)
        self._rng = rng or random.Random()

    @classmethod
    async def open(cls,
                   addresses: Iterable[str],
                   settings: Optional[PoolSettings] = None,
                   *,
                   rng: Optional[random.Random] = None) -> "IdentityPool":
        settings = settings or PoolSettings()
        parsed: List[str] = []
        for raw in addresses:
            addr = parse_source_address(raw)
            if addr in parsed:
                raise PoolConstructionError(f"Duplicate source address: {addr}")
            parsed.append(addr)
        if not parsed:
            raise PoolConstructionError("Identity pool needs at least one source address")

        identities: List[NetworkIdentity] = []
        try:
            for addr in parsed:
                identities.append(NetworkIdentity(addr, build_session(addr, settings)))
        except (OSError, ValueError) as e:
            for ident in identities:
                await ident.session.close()
            raise PoolConstructionError(f"Failed to create HTTP client: {e}") from e

        log.info("Identity pool ready: %s source addresses (timeout=%.1fs keepalive=%.0fs idle=%.0fs per_host=%s)",
                 len(identities), settings.timeout_s, settings.keepalive_s, settings.idle_timeout_s,
                 settings.per_host_limit)
        return cls(identities, rng=rng)

    def __len__(self) -> int:
        return len(self._identities)

    @property
    def addresses(self) -> List[str]:
        return [i.address for i in self._identities]

    def acquire_client(self) -> NetworkIdentity:
        return self._rng.choice(self._identities)

    async def close(self) -> None:
        for ident in self._identities:
            await ident.session.close()
        log.info("Identity pool closed (%s sessions)", len(self._identities))

    async def __aenter__(self) -> "IdentityPool":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


async def request_status(identity: NetworkIdentity,
                         method: str,
                         url: str,
                         headers: Optional[Mapping[str, str]] = None) -> int:
    """Send one request and return only its status code."""
    try:
        async with identity.session.request(method, url, headers=headers) as resp:
            status = resp.status
    except asyncio.TimeoutError:
        raise TransportError("timeout") from None
    except aiohttp.ClientError as e:
        raise TransportError(f"{type(e).__name__}: {e}") from e
    except OSError as e:
        # resets and refusals that reach us without an aiohttp wrapper
        raise TransportError(f"{type(e).__name__}: {e}") from e
    log.debug("%s %s via %s -> %s", method, url, identity.address, status)
    return status


# ---------------------------
# Probe + claim
# ---------------------------

class AvailabilityProber:
    def __init__(self, pool: IdentityPool, *, lookup_url: str = DEFAULT_LOOKUP_URL):
        self.pool = pool
        self.lookup_url = lookup_url

    async def probe(self, identifier: str, identity: Optional[NetworkIdentity] = None) -> Tuple[bool, int]:
        """
        Returns (is_available, raw_status). Only 204 counts as available;
        errors and 429 come back as plain statuses for the caller to classify.
        """
        identity = identity or self.pool.acquire_client()
        status = await request_status(identity, "GET", self.lookup_url.format(uuid=identifier))
        return status == HTTP_NO_CONTENT, status


class ClaimAttempter:
    def __init__(self,
                 pool: IdentityPool,
                 credentials: Sequence[str],
                 *,
                 policy: CredentialPolicy = CredentialPolicy.FIRST,
                 claim_url: str = DEFAULT_CLAIM_URL):
        self.pool = pool
        self.credentials: Tuple[str, ...] = tuple(credentials)
        self.policy = policy
        self.claim_url = claim_url
        self._cursor = itertools.count()

    @property
    def has_credentials(self) -> bool:
        return bool(self.credentials)

    def next_credential(self) -> str:
        if not self.credentials:
            raise MissingCredentialError("No authentication tokens available")
        if self.policy is CredentialPolicy.ROUND_ROBIN:
            return self.credentials[next(self._cursor) % len(self.credentials)]
        return self.credentials[0]

    async def attempt_claim(self, name: str, identity: Optional[NetworkIdentity] = None) -> Tuple[bool, int]:
        token = self.next_credential()
        identity = identity or self.pool.acquire_client()
        status = await request_status(
            identity,
            "PUT",
            self.claim_url.format(name=name),
            headers={"Authorization": f"Bearer {token}"},
        )
        return status == HTTP_OK, status


# ---------------------------
# Monitor loop
# ---------------------------

class MonitorLoop:
    """
    Idle -> in-flight -> draining -> idle, forever or until `stop` is set.

    Each round copies the target mapping, launches one task per target and
    hands every RoundResult to the sink in completion order.
    """

    def __init__(self,
                 prober: AvailabilityProber,
                 attempter: ClaimAttempter,
                 sink: ResultSink,
                 *,
                 identity_policy: IdentityPolicy = IdentityPolicy.PER_REQUEST,
                 rate_limit_statuses: Iterable[int] = DEFAULT_RATE_LIMIT_STATUSES):
        self.prober = prober
        self.attempter = attempter
        self.sink = sink
        self.identity_policy = identity_policy
        self.rate_limit_statuses = frozenset(rate_limit_statuses)
        self.state = LoopState.IDLE
        self.rounds_completed = 0

    async def check_target(self, name: str, identifier: str) -> RoundResult:
        identity = None
        if self.identity_policy is IdentityPolicy.PER_TARGET:
            identity = self.prober.pool.acquire_client()

        try:
            available, status = await self.prober.probe(identifier, identity)
        except TransportError as e:
            return RoundResult(name, identifier, f"error: {e}", False, ResultKind.ERROR)

        if status in self.rate_limit_statuses:
            return RoundResult(name, identifier, str(status), False, ResultKind.RATE_LIMITED)
        if not available:
            return RoundResult(name, identifier, str(status), False, ResultKind.TAKEN)

        try:
            claimed, claim_status = await self.attempter.attempt_claim(name, identity)
        except TransportError as e:
            return RoundResult(name, identifier, f"error: {e}", False, ResultKind.ERROR)

        if claimed:
            log.warning("Claimed %s (%s) status=%s", name, identifier, claim_status)
            return RoundResult(name, identifier, f"claimed ({claim_status})", True, ResultKind.CLAIMED)
        log.info("Claim failed for %s (%s) status=%s", name, identifier, claim_status)
        return RoundResult(name, identifier, f"failed to claim ({claim_status})", True, ResultKind.CLAIM_FAILED)

    async def run_round(self, targets: Mapping[str, str]) -> List[RoundResult]:
        snapshot = dict(targets)
        started = time.perf_counter()
        self.state = LoopState.IN_FLIGHT

        tasks = [asyncio.ensure_future(self.check_target(name, uuid)) for name, uuid in snapshot.items()]
        results: List[RoundResult] = []
        config_error: Optional[MissingCredentialError] = None
        try:
            for fut in asyncio.as_completed(tasks):
                try:
                    result = await fut
                except MissingCredentialError as e:
                    log.error("Claim skipped: %s", e)
                    config_error = config_error or e
                    continue
                self.state = LoopState.DRAINING
                self.sink(result)
                results.append(result)
        finally:
            pending = [t for t in tasks if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self.state = LoopState.IDLE

        if config_error is not None:
            raise config_error

        self.rounds_completed += 1
        counts = Counter(r.kind.value for r in results)
        log.info("Round %s drained: targets=%s elapsed=%.2fs %s",
                 self.rounds_completed, len(results), time.perf_counter() - started,
                 " ".join(f"{k}={v}" for k, v in sorted(counts.items())))
        return results

    async def run(self,
                  targets: Mapping[str, str],
                  *,
                  stop: Optional[asyncio.Event] = None,
                  max_rounds: Optional[int] = None) -> int:
        """Run rounds back to back. Returns the number of rounds completed."""
        if not self.attempter.has_credentials:
            raise MissingCredentialError("No authentication tokens available")

        done = 0
        while not (stop is not None and stop.is_set()):
            if max_rounds and done >= max_rounds:
                break
            await self.run_round(targets)
            done += 1
            # an empty snapshot never suspends; yield so signal handlers can run
            await asyncio.sleep(0)
        log.info("Monitor stopped after %s rounds", done)
        return done


async def run_claimer(targets: Mapping[str, str],
                      tokens: Sequence[str],
                      addresses: Sequence[str],
                      sink: ResultSink,
                      *,
                      settings: Optional[PoolSettings] = None,
                      identity_policy: IdentityPolicy = IdentityPolicy.PER_REQUEST,
                      credential_policy: CredentialPolicy = CredentialPolicy.FIRST,
                      rate_limit_statuses: Iterable[int] = DEFAULT_RATE_LIMIT_STATUSES,
                      max_rounds: Optional[int] = None,
                      stop: Optional[asyncio.Event] = None) -> int:
    if not tokens:
        raise MissingCredentialError("No authentication tokens available")

    pool = await IdentityPool.open(addresses, settings)
    async with pool:
        monitor = MonitorLoop(
            AvailabilityProber(pool),
            ClaimAttempter(pool, tokens, policy=credential_policy),
            sink,
            identity_policy=identity_policy,
            rate_limit_statuses=rate_limit_statuses,
        )
        return await monitor.run(targets, stop=stop, max_rounds=max_rounds)


# ---------------------------
# CLI
# ---------------------------

def configure_logging(v: int) -> logging.Logger:
    level = logging.INFO
    if v >= 2:
        level = logging.DEBUG
    elif v == 0:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("name_claimer")


def install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: KeyboardInterrupt in __main__ still ends the run
            pass


async def main_async(args: argparse.Namespace) -> int:
    log_ = configure_logging(args.verbose)
    ensure_init()

    try:
        token_load = load_tokens(args.tokens_file)
        targets = load_targets(args.targets_file)
        if args.addresses_file:
            addresses = load_addresses(args.addresses_file)
        else:
            addresses = generate_addresses(args.subnet_prefix, args.address_count)
    except (OSError, ValueError) as e:
        log_.error("Configuration error: %s", e)
        return 2

    log_.info(token_load.describe())
    if not token_load.tokens:
        log_.error("Please load auth tokens first (%s is empty)", args.tokens_file)
        return 2
    if not targets:
        log_.error("No UUIDs stored in %s. Run uuid_lookup.py first.", args.targets_file)
        return 2

    settings = PoolSettings(
        timeout_s=args.timeout_s,
        keepalive_s=args.keepalive_s,
        idle_timeout_s=args.idle_timeout_s,
        per_host_limit=args.per_host_limit,
    )
    stop = asyncio.Event()
    install_stop_handlers(stop)

    try:
        rounds = await run_claimer(
            targets,
            token_load.tokens,
            addresses,
            ConsoleSink(),
            settings=settings,
            identity_policy=IdentityPolicy(args.identity_policy),
            credential_policy=CredentialPolicy(args.credential_policy),
            rate_limit_statuses=args.rate_limit_status or DEFAULT_RATE_LIMIT_STATUSES,
            max_rounds=args.max_rounds,
            stop=stop,
        )
    except (PoolConstructionError, MissingCredentialError) as e:
        log_.error("%s", e)
        return 2

    log_.info("Done. rounds=%s", rounds)
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("name_claimer.py", description="Monitor profile UUIDs and claim names as they drop.")
    p.add_argument("--tokens-file", default=None,
                   help=f"Bearer tokens, one per line (env: CLAIMER_TOKENS_FILE, default: {DEFAULT_TOKENS_FILE})")
    p.add_argument("--targets-file", default=None,
                   help=f"JSON object name -> uuid (env: CLAIMER_TARGETS_FILE, default: {DEFAULT_TARGETS_FILE})")

    # source addresses
    p.add_argument("--subnet-prefix", default=None,
                   help=f"Address prefix, suffixed with hex 0..count-1 (env: CLAIMER_SUBNET_PREFIX, default: {DEFAULT_SUBNET_PREFIX})")
    p.add_argument("--address-count", type=int, default=DEFAULT_ADDRESS_COUNT)
    p.add_argument("--addresses-file", default=None, help="Optional: explicit source addresses, one per line")

    # runtime
    p.add_argument("--timeout-s", type=float, default=10.0)
    p.add_argument("--keepalive-s", type=float, default=60.0, help="TCP keepalive idle time per socket")
    p.add_argument("--idle-timeout-s", type=float, default=60.0, help="How long pooled idle connections are kept")
    p.add_argument("--per-host-limit", type=int, default=50)
    p.add_argument("--identity-policy", choices=[x.value for x in IdentityPolicy],
                   default=IdentityPolicy.PER_REQUEST.value)
    p.add_argument("--credential-policy", choices=[x.value for x in CredentialPolicy],
                   default=CredentialPolicy.FIRST.value)
    p.add_argument("--rate-limit-status", type=int, action="append", default=None,
                   help="Status treated as a rate-limit signal (repeatable, default: 429)")
    p.add_argument("--max-rounds", type=int, default=0, help="Stop after N rounds (0 = run until interrupted)")
    p.add_argument("--dotenv", default=None, help="Path to .env file")
    p.add_argument("-v", "--verbose", action="count", default=1)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    load_env(args.dotenv)

    # flags win over .env / environment
    args.tokens_file = args.tokens_file or env_default("CLAIMER_TOKENS_FILE", DEFAULT_TOKENS_FILE)
    args.targets_file = args.targets_file or env_default("CLAIMER_TARGETS_FILE", DEFAULT_TARGETS_FILE)
    args.subnet_prefix = args.subnet_prefix or env_default("CLAIMER_SUBNET_PREFIX", DEFAULT_SUBNET_PREFIX)

    if args.address_count < 1:
        raise SystemExit("--address-count must be >= 1")
    if args.timeout_s <= 0:
        raise SystemExit("--timeout-s must be > 0")
    if args.keepalive_s <= 0 or args.idle_timeout_s <= 0:
        raise SystemExit("--keepalive-s and --idle-timeout-s must be > 0")
    if args.per_host_limit < 1:
        raise SystemExit("--per-host-limit must be >= 1")
    if args.max_rounds < 0:
        raise SystemExit("--max-rounds must be >= 0")
    if args.max_rounds == 0:
        args.max_rounds = None
    return asyncio.run(main_async(args))


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        raise SystemExit(130)
