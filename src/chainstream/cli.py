"""CLI for chainstream."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pyarrow.parquet as pq
import typer
from rich.console import Console
from rich.table import Table

from chainstream.client import ChainClient
from chainstream.config import StreamConfig
from chainstream.errors import ChainStreamError, UnrecoverableReorg
from chainstream.metrics import start_metrics_server
from chainstream.streaming.types import EARLIEST, LATEST, BlockSummary, BlockTag, LogRangeRequest

app = typer.Typer(name='chainstream', help='Chain-aware block and log streaming')
console = Console()


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging; httpx request logs are only shown in verbose mode."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    if not verbose:
        logging.getLogger('httpx').setLevel(logging.WARNING)
        logging.getLogger('httpcore').setLevel(logging.WARNING)


def load_config(config_file: Optional[Path]) -> StreamConfig:
    """Load a StreamConfig from a JSON file, or from CHAINSTREAM_* environment variables."""
    if config_file is None:
        return StreamConfig.from_env()
    with open(config_file, 'r') as f:
        return StreamConfig.from_dict(json.load(f))


def parse_block(value: str) -> BlockTag:
    """Parse a block number or one of the 'earliest' / 'latest' tags."""
    lowered = value.strip().lower()
    if lowered in (EARLIEST, LATEST):
        return lowered
    return int(lowered, 16) if lowered.startswith('0x') else int(lowered)


@app.command()
def watch(
    rpc_url: str = typer.Argument(..., envvar='CHAINSTREAM_RPC_URL', help='JSON-RPC endpoint URL'),
    config_file: Optional[Path] = typer.Option(None, '--config', '-c', help='JSON stream config file'),
    poll_interval: Optional[float] = typer.Option(None, '--poll-interval', help='Seconds between head polls'),
    tracked_depth: Optional[int] = typer.Option(None, '--tracked-depth', help='Blocks kept for reorg detection'),
    metrics_port: Optional[int] = typer.Option(None, '--metrics-port', help='Expose Prometheus metrics on this port'),
    verbose: bool = typer.Option(False, '--verbose', '-v', help='Enable debug logging'),
):
    """Stream canonical blocks, printing applied and reverted blocks."""
    configure_logging(verbose)
    try:
        config = load_config(config_file)
        if poll_interval is not None:
            config.poll_interval = poll_interval
        if tracked_depth is not None:
            config = StreamConfig.from_dict({**config.to_dict(), 'tracked_depth': tracked_depth, 'max_walk_back': None})
    except (ValueError, OSError) as e:
        console.print(f'[bold red]Error:[/bold red] Invalid configuration: {e}')
        sys.exit(1)

    if metrics_port is not None:
        start_metrics_server(metrics_port)
        console.print(f'[dim]Metrics available on :{metrics_port}/metrics[/dim]')

    console.print(f'[bold green]Watching blocks on[/bold green] {rpc_url}')
    try:
        asyncio.run(_watch(rpc_url, config))
    except KeyboardInterrupt:
        console.print('\n[yellow]Stopped[/yellow]')
    except UnrecoverableReorg as e:
        console.print(f'[bold red]Stream terminated:[/bold red] {e}')
        console.print('Restart from a safe block once the node has settled')
        sys.exit(2)


async def _watch(rpc_url: str, config: StreamConfig) -> None:
    terminated: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_block(block: BlockSummary) -> None:
        console.print(f'[green]+[/green] {block.number} {block.hash}')

    def on_revert(block: BlockSummary) -> None:
        console.print(f'[red]-[/red] {block.number} {block.hash} [dim](reverted)[/dim]')

    def on_error(error: Exception) -> None:
        if isinstance(error, UnrecoverableReorg):
            if not terminated.done():
                terminated.set_exception(error)
            return
        console.print(f'[yellow]⚠[/yellow] {error}')

    async with ChainClient.from_url(rpc_url, config=config) as client:
        client.watch_blocks(on_block, on_revert=on_revert, on_error=on_error)
        await terminated


@app.command()
def logs(
    rpc_url: str = typer.Argument(..., envvar='CHAINSTREAM_RPC_URL', help='JSON-RPC endpoint URL'),
    from_block: str = typer.Option(..., '--from', help="First block (number, hex or 'earliest')"),
    to_block: str = typer.Option(LATEST, '--to', help="Last block (number, hex or 'latest')"),
    address: Optional[List[str]] = typer.Option(None, '--address', '-a', help='Contract address (repeatable)'),
    topic: Optional[List[str]] = typer.Option(None, '--topic', '-t', help='Topic0 value (repeatable, OR-ed)'),
    output: Optional[Path] = typer.Option(None, '--output', '-o', help='Write logs to a Parquet file'),
    limit: int = typer.Option(20, '--limit', help='Rows to print'),
    verbose: bool = typer.Option(False, '--verbose', '-v', help='Enable debug logging'),
):
    """Fetch logs for a block range, splitting ranges the node rejects."""
    configure_logging(verbose)
    try:
        request = LogRangeRequest(
            from_block=parse_block(from_block),
            to_block=parse_block(to_block),
            address=address[0] if address and len(address) == 1 else (address or None),
            topics=[topic[0] if len(topic) == 1 else topic] if topic else None,
        )
    except ValueError as e:
        console.print(f'[bold red]Error:[/bold red] {e}')
        sys.exit(1)

    try:
        table = asyncio.run(_fetch_logs(rpc_url, request))
    except ChainStreamError as e:
        console.print(f'[bold red]Error:[/bold red] {e}')
        sys.exit(1)

    console.print(f'[bold]{table.num_rows} log(s)[/bold]')
    if output is not None:
        pq.write_table(table, output)
        console.print(f'  [green]✓[/green] Wrote {output}')

    preview = Table(title='Logs')
    preview.add_column('Block', justify='right')
    preview.add_column('Index', justify='right')
    preview.add_column('Address')
    preview.add_column('Topic0')
    for row in table.slice(0, limit).to_pylist():
        topics = row['topics']
        preview.add_row(str(row['block_number']), str(row['log_index']), row['address'], topics[0] if topics else '')
    console.print(preview)


async def _fetch_logs(rpc_url: str, request: LogRangeRequest):
    async with ChainClient.from_url(rpc_url, config=StreamConfig.from_env()) as client:
        return await client.get_logs_table(request)


def main():
    """Entry point for CLI."""
    app()


if __name__ == '__main__':
    main()
