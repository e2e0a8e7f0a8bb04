#!/usr/bin/env python
"""
Interactive helper that turns a base58 wallet key into an import bundle.

Run it on the key owner's machine; only the printed JSON leaves it.
"""

import getpass
import json
import sys

from predictgate.exceptions import GatewayError
from predictgate.wallet.byow import MIN_PASSWORD_LENGTH, encrypt_wallet_for_import


def main() -> int:
    private_key = getpass.getpass("Base58 private key: ").strip()
    if not private_key:
        print("A private key is required.", file=sys.stderr)
        return 1

    password = getpass.getpass(f"Password (min {MIN_PASSWORD_LENGTH} chars): ")
    confirm = getpass.getpass("Confirm password: ")
    if password != confirm:
        print("Passwords do not match.", file=sys.stderr)
        return 1

    try:
        bundle = encrypt_wallet_for_import(private_key, password)
    except GatewayError as e:
        print(e.public_message, file=sys.stderr)
        return 1

    print("\nWallet import bundle (pass these fields to import_wallet):")
    print(json.dumps(bundle.to_wire(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
