#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Inputs for the claimer: bearer tokens, tracked targets and source addresses.

- tokens.txt   : one bearer token per line, blank lines ignored, duplicates skipped
- targets.json : {"<name>": "<profile uuid>", ...}
- addresses    : generated as <prefix><hex i> (i = 0..count-1) or read from a file
- .env         : loaded with python-dotenv, never overrides the real environment
"""

from __future__ import annotations

import ipaddress
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Union

from dotenv import load_dotenv

DEFAULT_TOKENS_FILE = "tokens.txt"
DEFAULT_TARGETS_FILE = "targets.json"
DEFAULT_SUBNET_PREFIX = "2a0e:97c0:3e:ada::"
DEFAULT_ADDRESS_COUNT = 100

PathLike = Union[str, Path]


# ---------------------------
# Environment
# ---------------------------

def load_env(dotenv_path: Optional[str] = None) -> None:
    load_dotenv(dotenv_path=dotenv_path, override=False)


def env_default(var: str, default: str) -> str:
    v = os.getenv(var, "").strip()
    return v or default


# ---------------------------
# Tokens
# ---------------------------

@dataclass
class TokenLoad:
    tokens: List[str] = field(default_factory=list)
    duplicates: int = 0
    source: str = DEFAULT_TOKENS_FILE

    def describe(self) -> str:
        name = Path(self.source).name
        if self.duplicates:
            noun = "token" if self.duplicates == 1 else "tokens"
            return f"Loading {len(self.tokens)} token(s) from {name} (skipped {self.duplicates} duplicate {noun})"
        return f"Loading {len(self.tokens)} token(s) from {name}"


def dedupe_tokens(lines: Iterable[str]) -> TokenLoad:
    seen = set()
    out = TokenLoad()
    for line in lines:
        token = line.strip()
        if not token:
            continue
        if token in seen:
            out.duplicates += 1
            continue
        seen.add(token)
        out.tokens.append(token)
    return out


def load_tokens(path: PathLike) -> TokenLoad:
    p = Path(path)
    result = dedupe_tokens(p.read_text(encoding="utf-8").splitlines())
    result.source = str(p)
    return result


# ---------------------------
# Targets (name -> uuid)
# ---------------------------

def load_targets(path: PathLike) -> Dict[str, str]:
    """Missing file means no targets yet; anything but a str->str object is an error."""
    p = Path(path)
    if not p.exists():
        return {}
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{p}: expected a JSON object of name -> uuid")
    targets: Dict[str, str] = {}
    for name, uuid in data.items():
        if not isinstance(uuid, str) or not uuid.strip():
            raise ValueError(f"{p}: uuid for {name!r} must be a non-empty string")
        targets[str(name)] = uuid.strip()
    return targets


def save_targets(path: PathLike, targets: Mapping[str, str]) -> None:
    p = Path(path)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(json.dumps(dict(targets), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp.replace(p)


def parse_usernames(raw: str) -> List[str]:
    # comma-separated, blanks dropped, first occurrence wins
    out: List[str] = []
    for part in raw.split(","):
        s = part.strip()
        if s and s not in out:
            out.append(s)
    return out


# ---------------------------
# Source addresses
# ---------------------------

def generate_addresses(prefix: str, count: int) -> List[str]:
    if count < 1:
        raise ValueError("address count must be >= 1")
    out = []
    for i in range(count):
        raw = f"{prefix}{i:x}"
        try:
            out.append(str(ipaddress.ip_address(raw)))
        except ValueError:
            raise ValueError(f"Invalid address generated from prefix {prefix!r}: {raw}") from None
    return out


def iter_address_lines(path: Path) -> Iterator[str]:
    # One address per line, allow blank/comment lines
    for line in path.read_text(encoding="utf-8").splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        yield s


def load_addresses(path: PathLike) -> List[str]:
    p = Path(path)
    out = []
    for raw in iter_address_lines(p):
        try:
            out.append(str(ipaddress.ip_address(raw)))
        except ValueError:
            raise ValueError(f"{p}: invalid address {raw!r}") from None
    if not out:
        raise ValueError(f"{p}: no addresses found")
    return out
