import argparse
import os
from pathlib import Path
from typing import Optional, Sequence

from mta_antispam.dkim import generate_private_key, private_key_pem, public_key_record


def main(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        description="Generate a DKIM signing key and print the DNS TXT record "
        "publishing its public key."
    )
    parser.add_argument("--domain", required=True, help="Signing domain (d=)")
    parser.add_argument("--selector", default="default", help="Selector (s=)")
    parser.add_argument(
        "--algorithm", choices=("rsa", "ed25519"), default="rsa", help="Key type"
    )
    parser.add_argument(
        "--key-size", type=int, default=2048, help="RSA modulus size in bits"
    )
    parser.add_argument(
        "--output", type=Path, required=True, help="Where to write the PEM private key"
    )
    args = parser.parse_args(argv)

    if args.output.exists():
        parser.error(f"{args.output} exists, refusing to overwrite it")
    private_key = generate_private_key(args.algorithm, args.key_size)
    fd = os.open(args.output, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(private_key_pem(private_key))

    record = public_key_record(private_key.public_key())
    # TXT character-strings hold at most 255 bytes each.
    chunks = " ".join(
        f'"{record[i:i + 255]}"' for i in range(0, len(record), 255)
    )
    print(f"{args.selector}._domainkey.{args.domain}. IN TXT {chunks}")
