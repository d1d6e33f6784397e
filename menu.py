#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Interactive front end for the claimer.

  1. Load Auth Tokens from Config
  2. Get UUIDs
  3. Run Deletion Claimer
  4. View Stored UUIDs

Tokens and targets live in memory for the session; targets are also written
to the targets file so name_claimer.py can pick them up later.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from colorama import Fore

import name_claimer
from claimer_inputs import (
    DEFAULT_ADDRESS_COUNT,
    DEFAULT_SUBNET_PREFIX,
    DEFAULT_TARGETS_FILE,
    DEFAULT_TOKENS_FILE,
    env_default,
    generate_addresses,
    load_env,
    load_targets,
    load_tokens,
    parse_usernames,
    save_targets,
)
from console import DIM, ConsoleSink, ensure_init, print_colored, println_colored, render_banner
from uuid_lookup import merge_resolutions, resolve_many

TITLE = "Name Claimer"
MENU_ITEMS = [
    "1. Load Auth Tokens from Config",
    "2. Get UUIDs",
    "3. Run Deletion Claimer",
    "4. View Stored UUIDs",
]

log = logging.getLogger(__name__)


@dataclass
class MenuState:
    tokens_file: str = DEFAULT_TOKENS_FILE
    targets_file: str = DEFAULT_TARGETS_FILE
    subnet_prefix: str = DEFAULT_SUBNET_PREFIX
    address_count: int = DEFAULT_ADDRESS_COUNT
    tokens: List[str] = field(default_factory=list)
    targets: Dict[str, str] = field(default_factory=dict)


def clear_screen() -> None:
    os.system("cls" if os.name == "nt" else "clear")


def show_menu() -> None:
    clear_screen()
    print("\n\n")
    print(render_banner(TITLE))
    print()
    for item in MENU_ITEMS:
        println_colored(item, Fore.WHITE)
    print()


def prompt_choice() -> None:
    print()
    print_colored("Enter your choice ", DIM)
    println_colored("(1-4):", DIM)


# ---------------------------
# Actions
# ---------------------------

def do_load_tokens(state: MenuState) -> None:
    show_menu()
    try:
        loaded = load_tokens(state.tokens_file)
    except OSError as e:
        println_colored(f"Failed to load tokens: {e}", Fore.RED)
        return
    state.tokens = loaded.tokens
    println_colored(loaded.describe(), Fore.WHITE)
    println_colored(f"Successfully loaded {len(state.tokens)} Token(s).", Fore.GREEN)


def do_get_uuids(state: MenuState, read_line: Callable[[], str] = input) -> None:
    show_menu()
    print_colored("Enter usernames (comma-separated): ", DIM)
    usernames = parse_usernames(read_line())

    show_menu()
    print_colored("Fetching UUIDs for ", DIM)
    print_colored(str(len(usernames)), Fore.GREEN)
    println_colored(" usernames...", DIM)

    results = []
    for r in resolve_many(usernames):
        if r.ok:
            print_colored("Found UUID for ", DIM)
            print_colored(r.username, Fore.WHITE)
            print_colored(": ", DIM)
            println_colored(r.uuid or "", Fore.GREEN)
        else:
            print_colored("Failed to get UUID for ", DIM)
            print_colored(r.username, Fore.WHITE)
            print_colored(": ", DIM)
            println_colored(r.error or "", Fore.RED)
        results.append(r)

    if merge_resolutions(state.targets, results):
        try:
            save_targets(state.targets_file, state.targets)
        except OSError as e:
            println_colored(f"Could not write {state.targets_file}: {e}", Fore.RED)


def do_run_claimer(state: MenuState) -> None:
    if not state.tokens:
        show_menu()
        println_colored("Please load auth tokens first (option 1)", Fore.RED)
        return
    if not state.targets:
        show_menu()
        println_colored("No UUIDs stored. Please get UUIDs first (option 2)", Fore.RED)
        return

    clear_screen()
    try:
        addresses = generate_addresses(state.subnet_prefix, state.address_count)
        asyncio.run(name_claimer.run_claimer(state.targets, state.tokens, addresses, ConsoleSink()))
    except KeyboardInterrupt:
        show_menu()
        println_colored("Claimer stopped.", Fore.WHITE)
    except (ValueError, name_claimer.ClaimerError) as e:
        show_menu()
        println_colored(f"Claimer failed: {e}", Fore.RED)


def do_view_uuids(state: MenuState) -> None:
    show_menu()
    if not state.targets:
        println_colored("No UUIDs stored.", Fore.RED)
        return
    println_colored("Stored UUIDs:", DIM)
    for name, uuid in state.targets.items():
        print_colored(name, Fore.WHITE)
        print_colored(": ", DIM)
        println_colored(uuid, Fore.GREEN)


ACTIONS: Dict[int, Callable[[MenuState], None]] = {
    1: do_load_tokens,
    2: do_get_uuids,
    3: do_run_claimer,
    4: do_view_uuids,
}


def handle_choice(state: MenuState, raw: str) -> bool:
    """Run the action for `raw`; False when the input was not a valid choice."""
    try:
        choice = int(raw.strip())
    except ValueError:
        show_menu()
        println_colored(f"Invalid input: {raw.strip()!r}. Please enter a number between 1-4.", Fore.RED)
        return False
    action = ACTIONS.get(choice)
    if action is None:
        show_menu()
        println_colored("Invalid choice. Please enter a number between 1-4.", Fore.RED)
        return False
    action(state)
    return True


def run_menu(state: MenuState, read_line: Callable[[], str] = input) -> None:
    show_menu()
    print_colored("Enter your choice (1-4):", DIM)
    while True:
        try:
            raw = read_line()
        except EOFError:
            return
        handle_choice(state, raw)
        prompt_choice()


def main(argv: Optional[Sequence[str]] = None) -> int:
    p = argparse.ArgumentParser("menu.py", description="Interactive name claimer.")
    p.add_argument("--dotenv", default=None, help="Path to .env file")
    p.add_argument("-v", "--verbose", action="count", default=0)
    args = p.parse_args(argv)

    name_claimer.configure_logging(args.verbose)
    load_env(args.dotenv)
    ensure_init()

    state = MenuState(
        tokens_file=env_default("CLAIMER_TOKENS_FILE", DEFAULT_TOKENS_FILE),
        targets_file=env_default("CLAIMER_TARGETS_FILE", DEFAULT_TARGETS_FILE),
        subnet_prefix=env_default("CLAIMER_SUBNET_PREFIX", DEFAULT_SUBNET_PREFIX),
    )
    try:
        state.targets = load_targets(state.targets_file)
    except ValueError as e:
        log.warning("Ignoring unreadable targets file: %s", e)
    run_menu(state)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
