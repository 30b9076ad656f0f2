"""
Operator CLI.

    python -m Mail_Router.mr_server.cli classify alice ab_ punks.7804
    python -m Mail_Router.mr_server.cli keygen
    python -m Mail_Router.mr_server.cli decrypt --envelope msg.json --private-key <hex>
    python -m Mail_Router.mr_server.cli sweep
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from Mail_Router.mr_shared.classifier import classify
from Mail_Router.mr_shared.crypto_engine import EciesEngine
from Mail_Router.mr_shared.errors import IntegrityFailureError, InvalidKeyError, MailRouterError
from Mail_Router.mr_shared.types import Envelope
from Mail_Router.mr_db import connection
from Mail_Router.mr_server import config
from Mail_Router.mr_server.api import default_provider, build_runtime
from Mail_Router.mr_server.logging_config import configure_logging


def cmd_classify(args) -> int:
    for address in args.addresses:
        result = classify(address)
        row = asdict(result)
        row["accepted"] = result.accepted
        print(json.dumps(row))
    return 0


def cmd_keygen(args) -> int:
    public_key, private_key = EciesEngine().generate_keypair()
    print(json.dumps({"curve": "P-256", "public_key": public_key, "private_key": private_key}, indent=2))
    return 0


def cmd_decrypt(args) -> int:
    with open(args.envelope) as f:
        envelope = Envelope.from_dict(json.load(f))

    if envelope.kind != "encrypted" or envelope.ciphertext is None:
        print(f"envelope {envelope.id} is {envelope.kind}, nothing to decrypt", file=sys.stderr)
        return 1

    payload = envelope.recovery_ciphertext if args.recovery else envelope.ciphertext
    if payload is None:
        print("envelope has no recovery payload", file=sys.stderr)
        return 1

    try:
        print(EciesEngine().decrypt(payload, args.private_key))
    except (IntegrityFailureError, InvalidKeyError) as e:
        print(str(e), file=sys.stderr)
        return 2
    return 0


async def _run_sweep() -> int:
    provider = default_provider()
    if provider is None:
        print("fallback provider not configured", file=sys.stderr)
        return 1

    client = await connection.create_client(config.REDIS_URL, config.REDIS_SOCKET_TIMEOUT)
    try:
        report = await build_runtime(client, provider=provider).sweep.run()
    finally:
        await connection.close_client()
    print(json.dumps(asdict(report)))
    return 0


def cmd_sweep(args) -> int:
    try:
        return asyncio.run(_run_sweep())
    except MailRouterError as e:
        print(str(e), file=sys.stderr)
        return 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="mail-router", description="Mail router operator tools")
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    p_classify = sub.add_parser("classify", help="Classify one or more addresses")
    p_classify.add_argument("addresses", nargs="+")
    p_classify.set_defaults(func=cmd_classify)

    p_keygen = sub.add_parser("keygen", help="Generate a P-256 key pair locally")
    p_keygen.set_defaults(func=cmd_keygen)

    p_decrypt = sub.add_parser("decrypt", help="Open an encrypted envelope with a private key")
    p_decrypt.add_argument("--envelope", required=True, help="Path to envelope JSON")
    p_decrypt.add_argument("--private-key", required=True, help="Hex P-256 private scalar")
    p_decrypt.add_argument("--recovery", action="store_true", help="Open the recovery payload instead")
    p_decrypt.set_defaults(func=cmd_decrypt)

    p_sweep = sub.add_parser("sweep", help="Run one sweep of the fallback mailbox")
    p_sweep.set_defaults(func=cmd_sweep)

    args = parser.parse_args(argv)
    configure_logging(args.log_level, config.LOG_JSON)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
