#!/usr/bin/env python3
"""Generate a VAPID (P-256) keypair for Web Push.

Usage:
    python scripts/generate_vapid_keys.py [--env]

Prints the public key (uncompressed point) and the raw private key, both
base64url without padding, the forms VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY
expect. With --env the output is shell `export` lines. Store the private
key as a secret; it is printed once and never logged.
"""
import argparse
import base64
import sys

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def generate() -> tuple[str, str]:
    key = ec.generate_private_key(ec.SECP256R1())
    private_raw = key.private_numbers().private_value.to_bytes(32, 'big')
    public_raw = key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return _b64url(public_raw), _b64url(private_raw)


def main(argv=None):
    p = argparse.ArgumentParser(description="Generate VAPID keys for Web Push")
    p.add_argument("--env", action="store_true", help="print as shell export lines")
    args = p.parse_args(argv if argv is not None else sys.argv[1:])
    public, private = generate()
    if args.env:
        print(f"export VAPID_PUBLIC_KEY='{public}'")
        print(f"export VAPID_PRIVATE_KEY='{private}'")
    else:
        print(f"VAPID_PUBLIC_KEY={public}")
        print(f"VAPID_PRIVATE_KEY={private}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
