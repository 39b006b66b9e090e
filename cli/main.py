"""
Command-line interface for the Layr Payments package.
"""

import argparse
import asyncio
import json
import sys

from layr_payments import PaymentManager
from layr_payments.chain import MockChainClient, MovementChainClient
from layr_payments.config import CHAIN_ID, CURRENCY, CURRENCY_DECIMALS, ENABLED_STORAGE, RPC_URL, get_config_summary
from layr_payments.exceptions import LayrPaymentsError
from layr_payments.logging_config import set_log_level, setup_default_logging
from layr_payments.models import Project, UserAccount
from layr_payments.storage import DatabaseStorage, MemoryStorage
from layr_payments.utils import format_amount, normalize_tx_hash
from layr_payments.verification import VerificationOutcome

EXIT_PENDING = 2


def create_payment_manager(args: argparse.Namespace) -> PaymentManager:
    if args.storage not in ENABLED_STORAGE:
        raise ValueError(f"Storage backend '{args.storage}' is disabled in configuration.")
    if args.storage == "memory":
        storage = MemoryStorage()
    elif args.storage == "database":
        storage = DatabaseStorage(args.storage_path)
    else:
        raise ValueError(f"Unknown storage type: {args.storage}")
    if args.chain == "mock":
        chain_client = MockChainClient(chain_id=CHAIN_ID)
    elif args.chain == "movement":
        chain_client = MovementChainClient(rpc_url=args.rpc_url)
    else:
        raise ValueError(f"Unknown chain client: {args.chain}")
    return PaymentManager(storage=storage, chain_client=chain_client)


def _amount(value: int) -> str:
    return format_amount(value, CURRENCY_DECIMALS.get(CURRENCY, 8), CURRENCY)


async def _with_chain(pm: PaymentManager, coro_factory):
    await pm.connect()
    try:
        return await coro_factory()
    finally:
        await pm.close()


def cmd_add_user(args: argparse.Namespace) -> None:
    pm = create_payment_manager(args)
    user = pm.register_user(UserAccount(id=args.user_id, wallet_address=args.wallet, display_name=args.name))
    print(f"User {user.id} saved")
    if user.wallet_address:
        print(f"Wallet: {user.wallet_address}")


def cmd_add_project(args: argparse.Namespace) -> None:
    pm = create_payment_manager(args)
    project = pm.register_project(
        Project(
            id=args.project_id,
            owner_id=args.owner_id,
            title=args.title or "",
            demo_price=args.demo_price,
            download_price=args.download_price,
            owner_wallet=args.owner_wallet,
            chain_repo_id=args.repo_id,
        )
    )
    print(f"Project {project.id} saved")
    print(f"  Demo price: {_amount(project.demo_price)}")
    print(f"  Download price: {_amount(project.download_price)}")


def cmd_initiate(args: argparse.Namespace) -> None:
    pm = create_payment_manager(args)
    intent = pm.initiate_payment(args.user_id, args.project_id, args.access_type)
    print(f"Payment ID: {intent.id}")
    print(f"Amount: {intent.amount} ({_amount(intent.amount)})")
    print(f"Recipient: {intent.recipient}")
    print(f"Expires at: {intent.expires_at.isoformat()}")


def cmd_verify(args: argparse.Namespace) -> None:
    pm = create_payment_manager(args)
    if args.simulate_recipient is not None or args.simulate_amount is not None:
        if not isinstance(pm.chain_client, MockChainClient):
            raise ValueError("--simulate-recipient/--simulate-amount require --chain mock")
        intent = pm.get_intent(args.payment_id)
        recipient = args.simulate_recipient or (intent.recipient if intent else "0x0")
        amount = args.simulate_amount if args.simulate_amount is not None else (intent.amount if intent else 0)
        try:
            pm.chain_client.add_transfer(normalize_tx_hash(args.tx_hash), recipient, amount)
        except ValueError:
            pass  # malformed hash, rejected by verify_payment below

    result = asyncio.run(_with_chain(pm, lambda: pm.verify_payment(args.payment_id, args.tx_hash, args.user_id)))
    if result.outcome is VerificationOutcome.CONFIRMED:
        print(f"Access granted: {result.grant.tier.value} on {result.grant.project_id}")
        print(f"Purchase ID: {result.grant.id}")
        return
    if result.outcome is VerificationOutcome.PENDING:
        print(f"Transaction {result.tx_hash} is still pending. Try again in a few moments.")
        sys.exit(EXIT_PENDING)
    info = result.payment_error()
    print(f"Verification failed: {info.user_message} [{info.code.value}] ({result.reason.value})")
    for step in info.actionable_steps:
        print(f"  - {step}")
    sys.exit(1)


def cmd_check_access(args: argparse.Namespace) -> None:
    pm = create_payment_manager(args)
    status = asyncio.run(
        _with_chain(pm, lambda: pm.check_access(args.project_id, user_id=args.user_id, wallet=args.wallet))
    )
    print(f"Access for project {args.project_id}:")
    tier = status.highest_tier
    print(f"  Tier: {tier.value if tier else 'none'}")
    print(f"  Demo: {'yes' if status.has_demo else 'no'}")
    print(f"  Download: {'yes' if status.has_download else 'no'}")
    if status.is_owner:
        print("  Owner: yes")
    if status.discrepancy:
        print(f"  On-chain tier differs: {status.onchain_tier.value if status.onchain_tier else 'none'}")
    if status.fallback:
        print("  On-chain registry unavailable, ledger only")


def cmd_purchases(args: argparse.Namespace) -> None:
    pm = create_payment_manager(args)
    page = pm.get_user_purchases(args.user_id, page=args.page, limit=args.limit)
    print(f"Purchases for user {args.user_id} (page {page.page} of {page.total_pages}, {page.total} total):")
    if not page.purchases:
        print("  No purchases found.")
    for grant in page.purchases:
        print(f"  {grant.project_id}: {grant.tier.value} for {_amount(grant.amount)} (tx {grant.tx_hash})")


def cmd_history(args: argparse.Namespace) -> None:
    pm = create_payment_manager(args)
    if args.project:
        history = pm.get_project_transactions(args.project, page=args.page, limit=args.limit)
        label = f"project {args.project}"
    else:
        history = pm.get_transaction_history(
            args.user_id, direction=args.type, start=args.start, end=args.end, page=args.page, limit=args.limit
        )
        label = f"user {args.user_id}"
    print(f"Transactions for {label} (page {history.page} of {history.total_pages}, {history.total} total):")
    if not history.intents:
        print("  No transactions found.")
    for intent in history.intents:
        direction = history.direction(intent)
        prefix = f"[{direction}] " if direction else ""
        print(
            f"  {prefix}{intent.id}: {intent.project_id} {intent.tier.value} {_amount(intent.amount)} "
            f"{intent.status.value} ({intent.created_at.isoformat()})"
        )
    if history.summary is not None:
        print(
            f"  Confirmed incoming: {_amount(history.summary['totalIncoming'])}, "
            f"outgoing: {_amount(history.summary['totalOutgoing'])}"
        )


def cmd_config(args: argparse.Namespace) -> None:
    print(json.dumps(get_config_summary(), indent=2))


def cmd_health(args: argparse.Namespace) -> None:
    pm = create_payment_manager(args)

    async def _check():
        try:
            return await pm.get_health_status()
        finally:
            await pm.close()

    status = asyncio.run(_check())
    print(json.dumps(status, indent=2))
    if not status["healthy"]:
        sys.exit(1)


def cmd_serve(args: argparse.Namespace) -> None:
    try:
        import uvicorn
    except ImportError:
        print("The serve command needs the web extra: pip install 'layr-payments[web]'")
        sys.exit(1)
    from layr_payments.api import create_app

    uvicorn.run(create_app(create_payment_manager(args)), host=args.host, port=args.port)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Layr Payments Command Line Interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s add-user alice --wallet 0xa11ce
  %(prog)s add-project repo1 alice --demo-price 10000000 --download-price 100000000
  %(prog)s initiate bob repo1 download
  %(prog)s --chain movement verify pay_... 0x<64 hex> bob
  %(prog)s purchases bob
  %(prog)s history alice --type incoming
        """,
    )
    parser.add_argument(
        "--storage",
        choices=ENABLED_STORAGE,
        default="database" if "database" in ENABLED_STORAGE else ENABLED_STORAGE[0],
        help="Storage backend to use",
    )
    parser.add_argument("--storage-path", default="layr_payments.db", help="Path for database storage")
    parser.add_argument("--chain", choices=["mock", "movement"], default="mock", help="Chain client to use")
    parser.add_argument("--rpc-url", default=RPC_URL, help="Movement fullnode REST URL")
    parser.add_argument("--log-level", default="WARNING", help="Log level for package loggers")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    user_parser = subparsers.add_parser("add-user", help="Create or update a user")
    user_parser.add_argument("user_id", help="User ID")
    user_parser.add_argument("--wallet", help="Wallet address")
    user_parser.add_argument("--name", help="Display name")
    user_parser.set_defaults(func=cmd_add_user)

    project_parser = subparsers.add_parser("add-project", help="Create or update a project")
    project_parser.add_argument("project_id", help="Project ID")
    project_parser.add_argument("owner_id", help="Owner user ID")
    project_parser.add_argument("--title", help="Project title")
    project_parser.add_argument("--demo-price", type=int, default=0, help="Demo price in the smallest unit")
    project_parser.add_argument("--download-price", type=int, default=0, help="Download price in the smallest unit")
    project_parser.add_argument("--owner-wallet", help="Owner wallet, used when the owner has none on record")
    project_parser.add_argument("--repo-id", type=int, help="On-chain repository ID")
    project_parser.set_defaults(func=cmd_add_project)

    initiate_parser = subparsers.add_parser("initiate", help="Create a payment intent")
    initiate_parser.add_argument("user_id", help="Paying user ID")
    initiate_parser.add_argument("project_id", help="Project ID")
    initiate_parser.add_argument("access_type", help="demo or download")
    initiate_parser.set_defaults(func=cmd_initiate)

    verify_parser = subparsers.add_parser(
        "verify", help=f"Verify a submitted transaction (exit code {EXIT_PENDING} while pending)"
    )
    verify_parser.add_argument("payment_id", help="Payment ID from initiate")
    verify_parser.add_argument("tx_hash", help="Transaction hash")
    verify_parser.add_argument("user_id", help="Paying user ID")
    verify_parser.add_argument("--simulate-recipient", help="With --chain mock, pretend the transfer paid this wallet")
    verify_parser.add_argument("--simulate-amount", type=int, help="With --chain mock, pretend the transfer paid this amount")
    verify_parser.set_defaults(func=cmd_verify)

    access_parser = subparsers.add_parser("check-access", help="Show access on a project")
    access_parser.add_argument("project_id", help="Project ID")
    access_parser.add_argument("--user-id", help="User ID")
    access_parser.add_argument("--wallet", help="Wallet address")
    access_parser.set_defaults(func=cmd_check_access)

    purchases_parser = subparsers.add_parser("purchases", help="List a user's purchases")
    purchases_parser.add_argument("user_id", help="User ID")
    purchases_parser.add_argument("--page", type=int, default=1, help="Page number")
    purchases_parser.add_argument("--limit", type=int, default=20, help="Page size")
    purchases_parser.set_defaults(func=cmd_purchases)

    history_parser = subparsers.add_parser("history", help="List a user's or a project's payment history")
    history_parser.add_argument("user_id", nargs="?", help="User ID")
    history_parser.add_argument("--project", help="List a project's transactions instead")
    history_parser.add_argument("--type", choices=["incoming", "outgoing"], help="Only incoming or outgoing payments")
    history_parser.add_argument("--start", help="Earliest creation date (ISO 8601)")
    history_parser.add_argument("--end", help="Latest creation date (ISO 8601)")
    history_parser.add_argument("--page", type=int, default=1, help="Page number")
    history_parser.add_argument("--limit", type=int, default=20, help="Page size")
    history_parser.set_defaults(func=cmd_history)

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.set_defaults(func=cmd_config)

    health_parser = subparsers.add_parser("health", help="Check storage and chain health")
    health_parser.set_defaults(func=cmd_health)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    setup_default_logging()
    set_log_level(args.log_level, "layr_payments")
    if not args.command:
        parser.print_help()
        sys.exit(1)
    try:
        args.func(args)
    except LayrPaymentsError as e:
        print(f"Error: {e.user_message} ({e})")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
