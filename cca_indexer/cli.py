#!/usr/bin/env python3
"""
Operator command line for the CCA indexer.

    cca-indexer setup-db
    cca-indexer scan 8453 30000000 30100000
    cca-indexer scan-auction 8453 0x...
    cca-indexer reconstruct 8453 --tx 0x...
    cca-indexer cron --interval
    cca-indexer serve
"""

import argparse
import logging
import sys
import time
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import configure_logging, get_currency_decimals, get_currency_name, get_settings, load_chain_config
from .indexer import CCAIndexer
from .jobs import refresh_eth_price, run_scheduled_scan
from .models import AuctionSnapshot
from .numeric import q96_to_price, raw_amount_to_decimal
from .providers.coingecko import CoinGeckoClient
from .providers.etherscan import EtherscanClient
from .reconstructor import AuctionReconstructor, upsert_auction_snapshot
from .rpc import ChainClient
from .store import PostgresStore

console = Console()
logger = logging.getLogger(__name__)


def open_store() -> PostgresStore:
    database_url = get_settings().database_url
    if not database_url:
        console.print("[red]DATABASE_URL is not set[/red]")
        sys.exit(1)
    return PostgresStore(database_url)


def build_indexer(store: PostgresStore) -> CCAIndexer:
    settings = get_settings()
    explorer = EtherscanClient(settings.etherscan_api_key, settings.etherscan_api_url)
    metadata = CoinGeckoClient(settings.coingecko_api_url)
    return CCAIndexer(store, explorer=explorer, metadata=metadata)


def scan_table(title: str, rows: List[tuple]) -> Table:
    table = Table(title=title, title_style="bold cyan")
    table.add_column("Chain", style="dim")
    table.add_column("Target", style="cyan")
    table.add_column("Blocks", style="magenta", justify="right")
    table.add_column("Processed", style="green", justify="right")
    table.add_column("Skipped", style="yellow", justify="right")
    table.add_column("Errors", style="red", justify="right")
    for chain_label, target, result in rows:
        if result is None:
            table.add_row(chain_label, target, "-", "-", "-", "[red]failed[/red]")
            continue
        table.add_row(chain_label, target, f"{result.blocks_scanned:,}", str(result.processed),
                      str(result.skipped), str(result.errors))
    return table


def snapshot_table(snapshot: AuctionSnapshot) -> Table:
    params = snapshot.parameters
    currency = get_currency_name(params.currency)
    supply = snapshot.supply

    table = Table(title=f"🎯 Auction {snapshot.auction_address}", title_style="bold cyan")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Status", snapshot.status)
    table.add_row("Token", f"{snapshot.token_name} ({snapshot.token_symbol}) {snapshot.token_address}")
    table.add_row("Created", f"block {snapshot.block_number} via {snapshot.called_via}")
    table.add_row("Creator", snapshot.creator)
    table.add_row("Tx", snapshot.tx_hash)
    table.add_row("Currency", f"{currency} {params.currency}")
    table.add_row("Auction amount",
                  f"{raw_amount_to_decimal(snapshot.auction_amount, snapshot.token_decimals)} {snapshot.token_symbol}")
    floor = q96_to_price(params.floor_price, snapshot.token_decimals, get_currency_decimals(params.currency))
    table.add_row("Floor price", f"{floor} {currency}")
    table.add_row("Blocks", f"{params.start_block} → {params.end_block} (claim {params.claim_block})")
    table.add_row("Duration", f"{snapshot.time_info.duration_seconds // 3600}h")
    table.add_row("Steps", str(len(params.steps)))
    table.add_row("Supply split",
                  f"auction {supply.auction_percent}% / pool {supply.pool_percent}% / owner {supply.owner_percent}%")
    table.add_row("Mintable", "yes" if snapshot.mint_info.is_mintable else "no")
    if snapshot.pool_info is not None:
        table.add_row("Strategy", snapshot.pool_info.strategy_factory_name)
    return table


def cmd_setup_db(args) -> int:
    store = open_store()
    try:
        store.apply_schema()
    finally:
        store.close()
    console.print("✅ [bold green]Database schema ready[/bold green]")
    return 0


def cmd_scan(args) -> int:
    store = open_store()
    try:
        indexer = build_indexer(store)
        result = indexer.scan(args.chain, args.from_block, args.to_block, address=args.address)
    finally:
        store.close()
    target = args.address or f"{args.from_block}-{args.to_block}"
    console.print(scan_table("🔍 Range Scan", [(str(args.chain), target, result)]))
    return 1 if result.errors else 0


def cmd_scan_auction(args) -> int:
    store = open_store()
    try:
        indexer = build_indexer(store)
        result = indexer.scan_auction(args.chain, args.address, to_block=args.to_block)
    finally:
        store.close()
    console.print(scan_table("🔍 Auction Scan", [(str(args.chain), args.address, result)]))
    return 1 if result.errors else 0


def cmd_reconstruct(args) -> int:
    if not args.address and not args.tx:
        console.print("[red]Provide an auction address or --tx[/red]")
        return 2

    chains = load_chain_config()
    if args.chain not in chains:
        console.print(f"[red]Unsupported chain ID: {args.chain}. Supported: {sorted(chains)}[/red]")
        return 2

    settings = get_settings()
    reconstructor = AuctionReconstructor(
        ChainClient(chains[args.chain]),
        explorer=EtherscanClient(settings.etherscan_api_key, settings.etherscan_api_url),
        metadata=CoinGeckoClient(settings.coingecko_api_url),
    )

    store = open_store() if args.save else None
    try:
        if args.tx:
            snapshot = reconstructor.reconstruct_from_tx(args.tx, args.address)
        else:
            snapshot = reconstructor.reconstruct(args.address)

        console.print(snapshot_table(snapshot))
        if store is not None:
            auction_id = upsert_auction_snapshot(
                store, snapshot, reconstructor.source_code_hash(snapshot.auction_address))
            console.print(f"✅ Saved auction [green]{snapshot.auction_address}[/green] (id {auction_id})")
    finally:
        if store is not None:
            store.close()
    return 0


def run_cron_once(indexer: CCAIndexer, coingecko: CoinGeckoClient, max_blocks: Optional[int]) -> List[tuple]:
    """One pass over every configured chain plus the ETH price refresh"""
    rows = []
    for chain_id, chain in sorted(indexer.chains.items()):
        try:
            result = run_scheduled_scan(indexer, chain_id, max_blocks=max_blocks)
        except Exception as e:
            logger.error(f"❌ Scheduled scan failed for {chain.title}: {e}")
            result = None
        rows.append((chain.title, "head", result))

    try:
        refresh_eth_price(indexer.store, coingecko)
    except Exception as e:
        logger.error(f"❌ ETH price refresh failed: {e}")
    return rows


def cmd_cron(args) -> int:
    settings = get_settings()
    store = open_store()
    try:
        indexer = build_indexer(store)
        coingecko = indexer.metadata
        if args.interval is None:
            rows = run_cron_once(indexer, coingecko, args.max_blocks)
            console.print(scan_table("⏱️ Scheduled Scan", rows))
            return 1 if any(result is None for _, _, result in rows) else 0

        interval = args.interval or settings.cron_interval
        console.print(Panel.fit(f"⏱️ Running scheduled scans every {interval}s (Ctrl+C to stop)",
                                border_style="cyan"))
        while True:
            rows = run_cron_once(indexer, coingecko, args.max_blocks)
            console.print(scan_table("⏱️ Scheduled Scan", rows))
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped by user[/yellow]")
        return 0
    finally:
        store.close()


def cmd_eth_price(args) -> int:
    store = open_store()
    try:
        price = refresh_eth_price(store, CoinGeckoClient(get_settings().coingecko_api_url))
    finally:
        store.close()
    if price is None:
        console.print("[red]Could not fetch ETH price[/red]")
        return 1
    console.print(f"💲 ETH/USD: [green]${price}[/green]")
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    from .api import create_app

    settings = get_settings()
    store = open_store()
    try:
        app = create_app(build_indexer(store))
        uvicorn.run(app, host=args.host or settings.api_host, port=args.port or settings.api_port)
    finally:
        store.close()
    return 0


def cmd_repair(args) -> int:
    store = open_store()
    try:
        indexer = build_indexer(store)
        repaired = indexer.repair_missing_auctions(args.chain)
    finally:
        store.close()
    if not repaired:
        console.print("✅ No auctions missing")
        return 0
    console.print(scan_table("🔧 Repaired Auctions", [(str(cid), address, result) for cid, address, result in repaired]))
    return 1 if any(result is None for _, _, result in repaired) else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='cca-indexer', description='Continuous Clearing Auction indexer')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL')
    subparsers = parser.add_subparsers(dest='command', required=True)

    setup_db = subparsers.add_parser('setup-db', help='Create tables and seed event topics')
    setup_db.set_defaults(func=cmd_setup_db)

    scan = subparsers.add_parser('scan', help='Scan a block range for known events')
    scan.add_argument('chain', type=int, help='Chain ID')
    scan.add_argument('from_block', type=int)
    scan.add_argument('to_block', type=int)
    scan.add_argument('--address', help='Only logs emitted by this contract')
    scan.set_defaults(func=cmd_scan)

    scan_auction = subparsers.add_parser('scan-auction', help='Reconstruct an auction and scan its events')
    scan_auction.add_argument('chain', type=int, help='Chain ID')
    scan_auction.add_argument('address', help='Auction contract address')
    scan_auction.add_argument('--to-block', type=int, dest='to_block', default=None)
    scan_auction.set_defaults(func=cmd_scan_auction)

    reconstruct = subparsers.add_parser('reconstruct', help='Rebuild auction state from chain data')
    reconstruct.add_argument('chain', type=int, help='Chain ID')
    reconstruct.add_argument('address', nargs='?', default=None, help='Auction contract address')
    reconstruct.add_argument('--tx', default=None, help='Creation transaction hash')
    reconstruct.add_argument('--save', action='store_true', help='Upsert the result into the database')
    reconstruct.set_defaults(func=cmd_reconstruct)

    cron = subparsers.add_parser('cron', help='Scan every chain from its cursor and refresh the ETH price')
    cron.add_argument('--interval', type=int, nargs='?', const=0, default=None,
                      help='Keep running, sleeping this many seconds between passes (default CRON_INTERVAL)')
    cron.add_argument('--max-blocks', type=int, dest='max_blocks', default=None)
    cron.set_defaults(func=cmd_cron)

    eth_price = subparsers.add_parser('eth-price', help='Fetch and store the ETH/USD price')
    eth_price.set_defaults(func=cmd_eth_price)

    serve = subparsers.add_parser('serve', help='Run the webhook server')
    serve.add_argument('--host', default=None)
    serve.add_argument('--port', type=int, default=None)
    serve.set_defaults(func=cmd_serve)

    repair = subparsers.add_parser('repair-missing-auctions',
                                   help='Rescan auctions whose events failed with AUCTION_NOT_FOUND')
    repair.add_argument('--chain', type=int, default=None)
    repair.set_defaults(func=cmd_repair)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.func(args)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return 2


if __name__ == "__main__":
    sys.exit(main())
