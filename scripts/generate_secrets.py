#!/usr/bin/env python3
"""Generate or check the gateway's signing and identity-hash keys.

Usage:
    # Print fresh keys in .env format:
    python scripts/generate_secrets.py >> .env

    # Check the keys the gateway would load from the environment / .env:
    python scripts/generate_secrets.py --check
"""
from __future__ import annotations

import argparse
import secrets
import sys


def generate() -> dict[str, str]:
    return {
        "SIGNING_KEY": secrets.token_urlsafe(48),
        "IDENTITY_HASH_KEY": secrets.token_urlsafe(48),
    }


def check() -> int:
    from mytgate.config import Settings
    from mytgate.service.errors import ConfigError

    try:
        Settings.from_env().validate_secrets()
    except ConfigError as exc:
        print(f"invalid: {exc.message}", file=sys.stderr)
        return 1
    print("ok: SIGNING_KEY and IDENTITY_HASH_KEY are usable")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--check",
        action="store_true",
        help="validate the configured keys instead of generating new ones",
    )
    args = parser.parse_args()
    if args.check:
        return check()
    for name, value in generate().items():
        print(f"{name}={value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
