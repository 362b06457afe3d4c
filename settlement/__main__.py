import argparse
import asyncio
import json
import logging
import sys

from .api import generate_operator_token
from .config import load_chain
from .errors import SettlementError
from .hd import HDKeyring, generate_mnemonic
from .jobs import DepositJobStore, row_to_dict
from .ledger import provision_missing
from .models import build_engine, init_db, make_session_factory
from .rpc import ChainClient
from .service import SettlementService, setup_logging
from .withdraw import send_withdrawal

logger = logging.getLogger("settlement")


def session_factory():
    engine = build_engine()
    init_db(engine)
    return make_session_factory(engine)


def cmd_run(args):
    service = SettlementService()
    asyncio.run(service.run(with_api=not args.no_api))


def cmd_sweep(args):
    service = SettlementService()
    results = asyncio.run(service.sweep(args.chain, args.to))
    print(json.dumps({key: [o.to_dict() for o in outcomes] for key, outcomes in results.items()}, indent=2))


def cmd_stuck(args):
    rows = DepositJobStore(session_factory()).stuck(args.older_than)
    print(json.dumps([row_to_dict(row) for row in rows], indent=2))


def cmd_redrive(args):
    if not args.key and not args.all:
        raise SystemExit("redrive needs a job key or --all")
    service = SettlementService()

    async def redrive():
        jobs = service.redrive_all() if args.all else [j for j in [service.redrive(args.key)] if j]
        if not jobs:
            print("Nothing to re-drive")
            return
        await service.ensure_queue().join()
        for job in jobs:
            row = service.store.get(job.identity)
            print(f"{job.identity}: {row.status if row else 'missing'}")

    asyncio.run(redrive())


def cmd_address(args):
    print(HDKeyring().address_for(args.index))


def cmd_provision(args):
    keyring = HDKeyring()
    SessionLocal = session_factory()
    with SessionLocal() as session:
        count = provision_missing(session, keyring)
        session.commit()
    print(f"Provisioned {count} deposit address(es)")


def cmd_withdraw(args):
    client = ChainClient(load_chain(args.chain))
    tx_hash = asyncio.run(send_withdrawal(client, args.to, args.amount))
    print(tx_hash)


def cmd_mnemonic(args):
    print(generate_mnemonic(args.words))


def cmd_token(args):
    print(generate_operator_token(args.operator, args.ttl))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="settlement", description="Custodial deposit settlement service")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Run watchers, queue, resync loop and API")
    p.add_argument("--no-api", action="store_true", help="Do not start the HTTP API")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("sweep", help="Sweep provisioned deposit addresses")
    p.add_argument("--chain", default=None, help="Only this chain key")
    p.add_argument("--to", default=None, help="Destination (default TREASURY_ADDRESS)")
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("stuck", help="List failed, unresolved and stalled deposits")
    p.add_argument("--older-than", type=int, default=None, help="Grace period in seconds")
    p.set_defaults(func=cmd_stuck)

    p = sub.add_parser("redrive", help="Retry settlement of a stuck deposit")
    p.add_argument("key", nargs="?", help="Job key chain:tx:logIndex")
    p.add_argument("--all", action="store_true", help="Re-drive every stuck deposit")
    p.set_defaults(func=cmd_redrive)

    p = sub.add_parser("address", help="Show the deposit address of a derivation index")
    p.add_argument("index", type=int)
    p.set_defaults(func=cmd_address)

    p = sub.add_parser("provision", help="Derive deposit addresses for users without one")
    p.set_defaults(func=cmd_provision)

    p = sub.add_parser("withdraw", help="Pay out stable tokens from the treasury")
    p.add_argument("chain")
    p.add_argument("to")
    p.add_argument("amount")
    p.set_defaults(func=cmd_withdraw)

    p = sub.add_parser("mnemonic", help="Generate a fresh master mnemonic")
    p.add_argument("--words", type=int, default=12, choices=[12, 15, 18, 21, 24])
    p.set_defaults(func=cmd_mnemonic)

    p = sub.add_parser("token", help="Issue an operator API token")
    p.add_argument("operator")
    p.add_argument("--ttl", type=int, default=60, help="Minutes")
    p.set_defaults(func=cmd_token)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        args.func(args)
    except (SettlementError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Stopping...")


if __name__ == "__main__":
    main()
