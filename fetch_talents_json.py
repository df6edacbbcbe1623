#!/usr/bin/env python3
"""
Fetch Raidbots talents.json (the node schema used by talent_decoder.py) for a
selected environment and save it next to these scripts.

Usage:
  - Interactive: python fetch_talents_json.py  # prompts: live, beta, or xptr
  - Non-interactive: python fetch_talents_json.py <live|beta|xptr>
"""
from __future__ import annotations
import configparser
import json
import sys
from pathlib import Path

import requests

BASE_DIR = Path(__file__).parent
CONFIG_INI = BASE_DIR / "config.ini"
OUT_FILE = BASE_DIR / "talents.json"

URLS = {
    "live": "https://www.raidbots.com/static/data/live/talents.json",
    "beta": "https://www.raidbots.com/static/data/beta/talents.json",
    "xptr": "https://www.raidbots.com/static/data/xptr/talents.json",
}
SHORTHAND = {"l": "live", "b": "beta", "x": "xptr"}


def normalize_mode(value: str | None) -> str | None:
    mode = (value or "").strip().lower()
    mode = SHORTHAND.get(mode, mode)
    return mode if mode in URLS else None


def prompt_mode() -> str:
    while True:
        try:
            mode = normalize_mode(input("Environment (live, beta, or xptr): "))
        except EOFError:
            mode = None
        if mode:
            return mode
        print("Please enter exactly: live, beta, or xptr.")


def config_mode(cfg_path: str | Path = CONFIG_INI) -> str | None:
    cfg = configparser.ConfigParser()
    try:
        cfg.read(cfg_path)
    except configparser.Error:
        return None
    return normalize_mode(cfg.get("talents", "env", fallback=None))


def fetch_and_save(mode: str, out_path: str | Path = OUT_FILE, session=None) -> int:
    '''
    Downloads talents.json for mode and writes it to out_path. The payload is
    checked to be a JSON list of specialization blocks before anything is
    written, so a failed download never replaces a good file.

    Returns the number of bytes written.
    '''
    http = session or requests
    resp = http.get(URLS[mode], headers={"User-Agent": "Mozilla/5.0 (compatible)"}, timeout=60)
    resp.raise_for_status()
    data = resp.content
    payload = json.loads(data)
    if not isinstance(payload, list) or not all("fullNodeOrder" in b for b in payload if isinstance(b, dict)):
        raise ValueError("Response is not a talents.json specialization list")
    with open(out_path, "wb") as f:
        f.write(data)
    return len(data)


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    mode = normalize_mode(argv[0]) if argv else None
    if not mode:
        mode = config_mode()
    if not mode:
        mode = prompt_mode()

    try:
        size = fetch_and_save(mode, OUT_FILE)
    except requests.HTTPError as e:
        print(f"HTTP error fetching {mode}: {e}")
        return 1
    except requests.RequestException as e:
        print(f"Network error fetching {mode}: {e}")
        return 1
    except ValueError as e:
        print(f"Invalid talents.json from {mode}: {e}")
        return 1
    print(f"Saved talents.json ({size} bytes) from '{mode}' to: {OUT_FILE}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
