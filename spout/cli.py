"""
Command line entry point.

    spout-orders accounts --requester <PUBKEY> [--side buy]
    spout-orders verify [--requester <PUBKEY>]
    spout-orders buy  AAPL 1.5 190.25 [--dry-run] [--keypair ~/.config/solana/id.json]
    spout-orders sell AAPL 1.5 190.25
    spout-orders status <SIGNATURE>

Quantities and prices are given in whole units and sent as 6-decimal fixed
point.
"""

import argparse
import asyncio
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence

from solders.signature import Signature

from spout.addresses import parse_address, resolve_account_set
from spout.attestation import AttestationVerifier
from spout.config import load_config
from spout.confirmation import Confirmer, OutcomeLedger
from spout.errors import ConfigurationError, SpoutError
from spout.ledger import RpcLedger
from spout.logging_config import setup_logging
from spout.models import Confirmed, OrderRequest, Side, user_message
from spout.pipeline import OrderPipeline
from spout.signer import KeypairSigner, load_keypair

logger = logging.getLogger(__name__)

DECIMALS = 6


def to_fixed_point(value: str) -> int:
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from e
    if not amount.is_finite():
        raise argparse.ArgumentTypeError(f"not a finite number: {value}")
    scaled = amount * (10 ** DECIMALS)
    if scaled != scaled.to_integral_value():
        raise argparse.ArgumentTypeError(f"{value} has more than {DECIMALS} decimal places")
    return int(scaled)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spout-orders", description="Spout order pipeline")
    parser.add_argument("--config", help="JSON config file (deployment/pipeline sections)")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--no-health-check", action="store_true", help="Skip the RPC health check")
    sub = parser.add_subparsers(dest="command", required=True)

    accounts = sub.add_parser("accounts", help="Print the derived account set")
    accounts.add_argument("--requester", required=True)
    accounts.add_argument("--side", choices=[s.value for s in Side], default=Side.BUY.value)

    verify = sub.add_parser("verify", help="Check the requester's compliance attestation")
    verify.add_argument("--requester", help="Defaults to the keypair's address")
    verify.add_argument("--keypair")

    for side in Side:
        order = sub.add_parser(side.value, help=f"Place a {side.value} order")
        order.add_argument("ticker")
        order.add_argument("quantity", type=to_fixed_point)
        order.add_argument("price", type=to_fixed_point)
        order.add_argument("--keypair")
        order.add_argument("--dry-run", action="store_true", help="Stop after simulation")
        order.add_argument("--timeout", type=float, help="Confirmation timeout in seconds")
        order.add_argument("--attestation", help="Attestation account override")

    status = sub.add_parser("status", help="Re-check a submitted transaction")
    status.add_argument("signature")
    return parser


def _address(value: Optional[str], name: str):
    address = parse_address(value)
    if address is None:
        raise ConfigurationError(f"invalid {name}: {value!r}")
    return address


def _signature(value: str) -> Signature:
    try:
        return Signature.from_string(value)
    except ValueError as e:
        raise ConfigurationError(f"invalid transaction signature: {value!r}") from e


async def _run(args: argparse.Namespace) -> int:
    deployment, settings = load_config(args.config)

    if args.command == "accounts":
        accounts = resolve_account_set(deployment, _address(args.requester, "requester"), Side(args.side))
        print(json.dumps(accounts.to_dict(), indent=2))
        return 0

    if args.command == "status":
        _signature(args.signature)

    async with await RpcLedger.connect(settings, check_health=not args.no_health_check) as ledger:
        if args.command == "status":
            confirmer = Confirmer(ledger, OutcomeLedger(), finality=settings.finality)
            outcome = await confirmer.check_status(args.signature)
            print(user_message(outcome))
            return 0 if isinstance(outcome, Confirmed) else 1

        if args.command == "verify":
            if args.requester:
                requester = _address(args.requester, "requester")
            else:
                requester = load_keypair(args.keypair).pubkey()
            result = await AttestationVerifier(ledger, deployment).verify(
                deployment.credential, deployment.schema, requester
            )
            print(f"{requester}: {'verified' if result.verified else 'not verified'} ({result.reason})")
            return 0 if result.verified else 1

        signer = KeypairSigner(load_keypair(args.keypair))
        pipeline = OrderPipeline(ledger, signer, deployment, settings)
        order = OrderRequest(
            side=Side(args.command),
            ticker=args.ticker,
            quantity=args.quantity,
            reference_price=args.price,
        )
        attestation = _address(args.attestation, "attestation") if args.attestation else None

        if args.dry_run:
            prepared = await pipeline.dry_run(order, attestation=attestation)
            print(prepared.simulation.summary())
            print(f"Provisioning instructions: {len(prepared.provisioning)}")
            return 0

        outcome = await pipeline.execute(order, timeout=args.timeout, attestation=attestation)
        print(user_message(outcome))
        if outcome.handle:
            print(outcome.handle)
        return 0 if isinstance(outcome, Confirmed) else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(level=args.log_level, json_format=args.json_logs)
    try:
        return asyncio.run(_run(args))
    except SpoutError as e:
        logger.debug(f"Command failed: {e.to_dict()}")
        print(user_message(e), file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
