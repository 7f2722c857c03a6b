"""CLI for chain-custody - operate custodial wallets from the terminal."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chain_custody.config import CustodyConfig, config_from_env, load_config
from chain_custody.errors import AmbiguousSubmission, CustodyError
from chain_custody.rpc.manager import RpcFailoverManager
from chain_custody.rpc.transport import HttpxTransport
from chain_custody.storage.database import get_database
from chain_custody.wallet.chains import get_chain
from chain_custody.wallet.keystore import MasterKey, load_master_key
from chain_custody.wallet.manager import WalletService
from chain_custody.wallet.tokens import to_base_units

app = typer.Typer(
    name="chain-custody",
    help="Custodial multi-chain wallets for Ethereum, BSC and Solana.",
    no_args_is_help=True,
)
console = Console()

_config_path: Optional[Path] = None


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"chain-custody {version('chain-custody')}")
        raise typer.Exit()


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML config file (defaults to NETWORK_MODE / *_RPC_URLS env vars)",
        envvar="CHAIN_CUSTODY_CONFIG",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Custodial multi-chain wallets for Ethereum, BSC and Solana."""
    global _config_path
    _config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


def _load_config() -> CustodyConfig:
    if _config_path is not None:
        return load_config(_config_path)
    return config_from_env()


@asynccontextmanager
async def _service() -> AsyncIterator[WalletService]:
    """Fully wired service; refuses to start without a valid master key."""
    config = _load_config()
    master_key = load_master_key(config.encryption_key_env)
    db = get_database(config.database_path)
    await db.connect()
    transport = HttpxTransport(timeout=config.rpc.request_timeout)
    try:
        yield WalletService.from_config(config, master_key, db, transport)
    finally:
        await transport.close()
        await db.close()


def _fail(exc: CustodyError) -> None:
    console.print(f"[red]{exc.code}: {exc.message}[/red]")
    raise typer.Exit(1)


@app.command()
def keygen():
    """Generate a new master encryption key (64 hex characters)."""
    console.print(Panel(
        f"[cyan]{MasterKey.generate_hex()}[/cyan]\n\n"
        "[dim]Set this as ENCRYPTION_KEY. Wallets encrypted under one key\n"
        "cannot be decrypted with another; keep it backed up.[/dim]",
        title="Master Key",
    ))


# ------------------------------------------------------------------
# wallet sub-commands
# ------------------------------------------------------------------

wallet_app = typer.Typer(
    name="wallet",
    help="Generate, import and inspect custodied wallets.",
    no_args_is_help=True,
)
app.add_typer(wallet_app, name="wallet")


@wallet_app.command("generate")
def wallet_generate(
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
    chain: str = typer.Option(..., "--chain", help="ETH, BSC or SOLANA"),
    index: int = typer.Option(0, "--index", "-i", help="BIP-44 derivation index"),
):
    """Generate a wallet from a fresh 24-word mnemonic."""

    async def _generate():
        async with _service() as service:
            return await service.generate_wallet(user, chain, index)

    try:
        result = _run(_generate())
    except CustodyError as exc:
        _fail(exc)

    console.print(Panel(
        f"[bold green]Wallet created![/bold green]\n\n"
        f"ID:      {result['id']}\n"
        f"Chain:   {result['chain']}\n"
        f"Address: [cyan]{result['address']}[/cyan]\n\n"
        f"[bold yellow]Mnemonic (shown once, never stored):[/bold yellow]\n"
        f"{result['mnemonic']}",
        title="New Wallet",
    ))


@wallet_app.command("import")
def wallet_import(
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
    chain: str = typer.Option(..., "--chain", help="ETH, BSC or SOLANA"),
    index: int = typer.Option(0, "--index", "-i", help="Derivation index (mnemonics only)"),
):
    """Import a wallet from a mnemonic or private key (prompted, hidden)."""
    secret = console.input("[bold]Mnemonic or private key: [/bold]", password=True)

    async def _import():
        async with _service() as service:
            return await service.import_wallet(user, chain, secret, index)

    try:
        result = _run(_import())
    except CustodyError as exc:
        _fail(exc)

    console.print(
        f"[bold green]Imported[/bold green] {result['chain']} wallet "
        f"[cyan]{result['address']}[/cyan] (id={result['id']}, index={result['derivation_index']})"
    )


@wallet_app.command("list")
def wallet_list(
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
    chain: str = typer.Option(None, "--chain", help="Filter by chain"),
):
    """List a user's wallets."""

    async def _list():
        async with _service() as service:
            return await service.list_wallets(user, chain)

    try:
        wallets = _run(_list())
    except CustodyError as exc:
        _fail(exc)

    if not wallets:
        console.print("[dim]No wallets.[/dim]")
        return

    table = Table(title=f"Wallets for {user}")
    table.add_column("ID", style="dim")
    table.add_column("Chain", style="cyan")
    table.add_column("Index", justify="right")
    table.add_column("Address")
    table.add_column("Created", style="dim")
    for w in wallets:
        table.add_row(w["id"], w["chain"], str(w["derivation_index"]), w["address"], w["created_at"])
    console.print(table)


@wallet_app.command("verify")
def wallet_verify(wallet_id: str = typer.Argument(help="Wallet id")):
    """Decrypt the stored key and check it still yields the stored address."""

    async def _verify():
        async with _service() as service:
            return await service.verify_wallet(wallet_id)

    try:
        ok = _run(_verify())
    except CustodyError as exc:
        _fail(exc)

    if ok:
        console.print(f"[green]Wallet {wallet_id} verified.[/green]")
    else:
        console.print(f"[red]Wallet {wallet_id} key does not match its address.[/red]")
        raise typer.Exit(1)


# ------------------------------------------------------------------
# balances and transfers
# ------------------------------------------------------------------


@app.command()
def balance(
    wallet_id: str = typer.Argument(help="Wallet id"),
    token: str = typer.Option(None, "--token", "-t", help="Token symbol or contract/mint"),
):
    """Show a wallet's native or token balance."""

    async def _balance():
        async with _service() as service:
            return await service.get_balance(wallet_id, token)

    try:
        result = _run(_balance())
    except CustodyError as exc:
        _fail(exc)

    console.print(f"[bold]{result['chain']}[/bold] {result['address']}: "
                  f"{result['formatted']} {result['symbol']}")


@app.command()
def send(
    wallet_id: str = typer.Argument(help="Wallet id"),
    amount: str = typer.Argument(help="Amount in display units (e.g. 0.01)"),
    to: str = typer.Option(..., "--to", help="Recipient address"),
    token: str = typer.Option(None, "--token", "-t", help="Token symbol or contract/mint"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Send native currency or a token from a custodied wallet."""

    async def _send():
        async with _service() as service:
            wallet = await service.get_wallet(wallet_id)
            chain = get_chain(wallet.chain)
            if token:
                info = service.tokens.resolve(chain.tag, token)
                symbol, decimals = info.symbol, info.decimals
            else:
                symbol, decimals = chain.native_symbol, chain.native_decimals
            units = to_base_units(amount, decimals)

            console.print(f"\n[bold]Send {amount} {symbol} on {chain.tag}[/bold]")
            console.print(f"  From: {wallet.address}")
            console.print(f"  To:   {to}\n")
            if not yes:
                typer.confirm("Confirm this transaction?", abort=True)
            return await service.transfer(wallet_id, to, units, token)

    try:
        result = _run(_send())
    except AmbiguousSubmission as exc:
        console.print(Panel(
            f"[bold yellow]Submission outcome unknown.[/bold yellow]\n\n"
            f"Tx: [cyan]{exc.record.tx_hash}[/cyan]\n"
            f"Record: {exc.record.id}\n\n"
            f"[dim]Do NOT resend. Check the explorer before retrying.[/dim]",
            title="Ambiguous",
        ))
        raise typer.Exit(2)
    except CustodyError as exc:
        _fail(exc)

    console.print(Panel(
        f"[bold green]Transaction {result['status']}![/bold green]\n\n"
        f"Tx: [cyan]{result['hash']}[/cyan]\n"
        f"Explorer: {result['explorer_url']}",
        title="Transaction",
    ))


@app.command()
def endpoints(
    chain: str = typer.Option(None, "--chain", help="Only this chain"),
):
    """Probe RPC endpoints and show pool health."""

    async def _probe():
        config = _load_config()
        async with HttpxTransport(timeout=config.rpc.probe_timeout) as transport:
            rpc = RpcFailoverManager.from_config(config, transport)
            chains = [chain] if chain else rpc.chains()
            snapshots = []
            for c in chains:
                snapshots.extend(await rpc.probe_all(c))
            return snapshots

    try:
        snapshots = _run(_probe())
    except CustodyError as exc:
        _fail(exc)

    table = Table(title="RPC Endpoints")
    table.add_column("Chain", style="cyan")
    table.add_column("#", justify="right")
    table.add_column("URL")
    table.add_column("Health")
    table.add_column("Last error", style="dim")

    colors = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}
    for s in snapshots:
        color = colors[s.health.value]
        table.add_row(
            s.chain,
            str(s.priority),
            s.url,
            f"[{color}]{s.health.value}[/{color}]",
            (s.last_error or "")[:60],
        )
    console.print(table)


if __name__ == "__main__":
    app()
