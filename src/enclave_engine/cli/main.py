"""
enclave CLI main entry point.

Usage:
    enclave [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import click
from rich.console import Console
from rich.table import Table

from ..abi import encode_erc20_transfer, encode_execute, normalize_address
from ..accounts import P256KeyMaterial
from ..config import NETWORK_DEFAULTS, EngineConfig, Network, build_default_config
from ..decoder import TokenRegistry, decode_call_data
from ..engine import Submission, SubmissionState, TransactionEngine
from ..erc4337.account_factory import AddressDeriver
from ..erc4337.bundler_client import BundlerClient, BundlerConfig
from ..erc4337.paymaster_client import PaymasterClient, PaymasterConfig
from ..exceptions import EnclaveError
from ..keystore import KeyStore, StoredKey
from ..logging_utils import setup_logging
from ..rpc_client import ChainRPCClient
from ..signing import KeyType
from ..units import USDC_DECIMALS, format_ether, format_units, parse_ether, parse_units

console = Console()


@asynccontextmanager
async def open_engine(config: EngineConfig) -> AsyncIterator[TransactionEngine]:
    """Engine wired to the configured node, bundler and optional paymaster."""
    network = config.network
    rpc = ChainRPCClient(network)
    bundler = BundlerClient(BundlerConfig.from_relay_config(network.bundler_url, network.entry_point, config.relay))
    paymaster = None
    if network.paymaster_url:
        paymaster = PaymasterClient(
            PaymasterConfig.from_relay_config(network.paymaster_url, network.entry_point, config.relay)
        )
    try:
        yield TransactionEngine(config, rpc, bundler, paymaster)
    finally:
        await rpc.close()
        await bundler.close()
        if paymaster is not None:
            await paymaster.close()


def _run(coro):
    try:
        return asyncio.run(coro)
    except EnclaveError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise SystemExit(1) from e


def _load_key(ctx: click.Context) -> StoredKey:
    store: KeyStore = ctx.obj["keystore"]
    index = ctx.obj["wallet"]
    if index not in store.indices():
        console.print(f"[yellow]No wallet {index}. Run `enclave new` first.[/yellow]")
        raise SystemExit(1)
    return store.load(index)


def _address_of(config: EngineConfig, key: StoredKey) -> str:
    material = key.key_material
    if isinstance(material, P256KeyMaterial):
        return AddressDeriver(config.factory, config.entry_point).address_for(material, key.index)
    return material.address


@click.group()
@click.version_option(package_name="enclave-engine", message="%(prog)s %(version)s")
@click.option("--network", "network", envvar="ENCLAVE_NETWORK", help="Network name (anvil, arbitrum_sepolia, arbitrum_one)")
@click.option("--wallet", "wallet", envvar="ENCLAVE_WALLET", type=int, default=0, show_default=True, help="Wallet index")
@click.option("--keys-dir", envvar="ENCLAVE_KEYS_DIR", type=click.Path(file_okay=False), help="Key directory")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, network: Optional[str], wallet: int, keys_dir: Optional[str], verbose: bool):
    """enclave - ERC-4337 smart account wallet."""
    ctx.ensure_object(dict)
    setup_logging("DEBUG" if verbose else "WARNING")
    try:
        config = build_default_config(network)
    except EnclaveError as e:
        raise click.UsageError(e.message) from e
    if keys_dir:
        config.keys_dir = Path(keys_dir).expanduser()
    ctx.obj["config"] = config
    ctx.obj["wallet"] = wallet
    ctx.obj["keystore"] = KeyStore(config.keys_dir)


@cli.command()
@click.pass_context
def networks(ctx):
    """List supported networks."""
    current = ctx.obj["config"].network.network
    table = Table(title="Networks")
    table.add_column("Name", style="cyan")
    table.add_column("Chain ID", justify="right")
    table.add_column("Display Name")
    table.add_column("Active")
    for network in Network:
        defaults = NETWORK_DEFAULTS[network]
        table.add_row(
            network.value,
            str(defaults["chain_id"]),
            defaults["display_name"],
            "*" if network == current else "",
        )
    console.print(table)


@cli.command()
@click.option(
    "--curve",
    type=click.Choice([k.value for k in KeyType]),
    default=KeyType.P256.value,
    show_default=True,
    help="Key curve; secp256k1 keys serve as secondary signers",
)
@click.pass_context
def new(ctx, curve: str):
    """Create a new wallet key."""
    store: KeyStore = ctx.obj["keystore"]
    key = store.create(KeyType(curve))
    console.print(f"[green]✓ Created wallet {key.index} ({curve})[/green]")
    try:
        console.print(f"Address: [cyan]{_address_of(ctx.obj['config'], key)}[/cyan]")
    except EnclaveError as e:
        console.print(f"[yellow]Address unavailable: {e.message}[/yellow]")


@cli.command()
@click.pass_context
def wallets(ctx):
    """List stored wallets."""
    config: EngineConfig = ctx.obj["config"]
    store: KeyStore = ctx.obj["keystore"]
    keys = store.load_all()
    if not keys:
        console.print("[dim]No wallets found[/dim]")
        return

    table = Table(title="Wallets")
    table.add_column("Index", justify="right")
    table.add_column("Curve")
    table.add_column("Address", style="cyan")
    table.add_column("Selected")
    for key in keys:
        try:
            address = _address_of(config, key)
        except EnclaveError:
            address = "[dim]factory not configured[/dim]"
        table.add_row(
            str(key.index),
            key.key_type.value,
            address,
            "*" if key.index == ctx.obj["wallet"] else "",
        )
    console.print(table)


@cli.command()
@click.pass_context
def status(ctx):
    """Show network, wallet and deployment status."""
    config: EngineConfig = ctx.obj["config"]
    key = _load_key(ctx)

    async def _status():
        async with open_engine(config) as engine:
            account = await engine.account_for(key.key_material, key.index)
            block = await engine.rpc.get_block_number()
            return account, block

    account, block = _run(_status())
    console.print(f"\n[bold blue]enclave status[/bold blue]\n")
    console.print(f"Network: [cyan]{config.network.display_name}[/cyan] (chain {config.chain_id}, block {block})")
    console.print(f"Wallet: {key.index} ({key.key_type.value})")
    console.print(f"Address: [cyan]{account.address}[/cyan]")
    deployed = "[green]deployed[/green]" if account.deployed else "[yellow]not deployed[/yellow]"
    console.print(f"Account: {deployed}")
    console.print()


@cli.command()
@click.pass_context
def balance(ctx):
    """Show ETH and USDC balances."""
    config: EngineConfig = ctx.obj["config"]
    key = _load_key(ctx)

    async def _balances():
        async with open_engine(config) as engine:
            account = await engine.account_for(key.key_material, key.index)
            eth = await engine.rpc.get_balance(account.address)
            usdc = None
            if config.network.usdc_address:
                usdc = await engine.rpc.get_erc20_balance(config.network.usdc_address, account.address)
            return account, eth, usdc

    account, eth, usdc = _run(_balances())
    console.print(f"\n[bold blue]Balance[/bold blue] [dim]{account.address}[/dim]\n")
    console.print(f"ETH:  [green]{format_ether(eth)}[/green]")
    if usdc is not None:
        console.print(f"USDC: [green]{format_units(usdc, USDC_DECIMALS, precision=2)}[/green]")
    console.print()


@cli.command()
@click.argument("to")
@click.argument("amount")
@click.option("--token", type=click.Choice(["eth", "usdc"]), default="eth", show_default=True)
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def send(ctx, to: str, amount: str, token: str, yes: bool):
    """Send ETH or USDC to an address."""
    config: EngineConfig = ctx.obj["config"]
    key = _load_key(ctx)
    try:
        recipient = normalize_address(to, field="to")
        if token == "eth":
            value = parse_ether(amount)
        else:
            value = parse_units(amount, USDC_DECIMALS)
    except EnclaveError as e:
        raise click.BadParameter(e.message) from e

    async def _send():
        async with open_engine(config) as engine:
            account = await engine.account_for(key.key_material, key.index)
            if token == "eth":
                call_data = encode_execute(recipient, value)
            else:
                call_data = _usdc_transfer(config, recipient, value)

            console.print("Building UserOperation...")
            for description in engine.describe(call_data):
                console.print(f"  • {description}")

            async def confirm(prepared: Submission) -> bool:
                cost = format_ether(prepared.user_op.max_gas_cost, precision=6)
                console.print(f"Estimated gas: {cost} ETH")
                if prepared.sponsored:
                    console.print("[green]Gas sponsored by paymaster[/green]")
                # click.confirm blocks on stdin
                if not yes and not await asyncio.to_thread(click.confirm, "Sign and submit?", default=True):
                    cancelled.append(True)
                    return False
                console.print("Signing, submitting and waiting for receipt...")
                return True

            console.print("Estimating gas...")
            return await engine.execute(account, call_data, key.signer, confirm=confirm)

    cancelled: list[bool] = []
    submission = _run(_send())
    if cancelled:
        console.print("[dim]Cancelled[/dim]")
        return
    _print_submission(config, submission)


def _usdc_transfer(config: EngineConfig, recipient: str, value: int) -> bytes:
    if not config.network.usdc_address:
        raise click.UsageError(f"No USDC address configured for {config.network.name}")
    return encode_execute(config.network.usdc_address, 0, encode_erc20_transfer(recipient, value))


def _print_submission(config: EngineConfig, submission) -> None:
    if submission.user_op_hash:
        console.print(f"UserOp hash: [cyan]{submission.user_op_hash}[/cyan]")
    if submission.state is SubmissionState.CONFIRMED:
        console.print("[green]✓ Confirmed[/green]")
    elif submission.state is SubmissionState.REVERTED:
        console.print("[red]✗ Reverted[/red]")
    elif submission.state is SubmissionState.TIMED_OUT:
        console.print("[yellow]Timed out waiting for receipt; the operation may still be included[/yellow]")
    elif submission.error is not None:
        console.print(f"[red]Error: {submission.error.message}[/red]")
    tx_hash = submission.transaction_hash
    if tx_hash:
        console.print(f"Tx hash: [cyan]{tx_hash}[/cyan]")
        explorer = config.network.explorer_tx_url(tx_hash)
        if explorer:
            console.print(f"Explorer: {explorer}")
    if submission.state is not SubmissionState.CONFIRMED:
        raise SystemExit(1)


@cli.command()
@click.pass_context
def deploy(ctx):
    """Deploy the selected wallet's account contract."""
    config: EngineConfig = ctx.obj["config"]
    key = _load_key(ctx)

    async def _deploy():
        async with open_engine(config) as engine:
            account = await engine.account_for(key.key_material, key.index)
            if account.deployed:
                return account, None
            console.print(f"Deploying {account.address}...")
            return account, await engine.deploy(account, key.signer)

    account, submission = _run(_deploy())
    if submission is None:
        console.print(f"Wallet {account.address} is already deployed.")
        return
    _print_submission(config, submission)


@cli.command()
@click.argument("calldata")
@click.pass_context
def decode(ctx, calldata: str):
    """Describe the actions in an account call payload."""
    tokens = TokenRegistry.for_network(ctx.obj["config"].network)
    for action in decode_call_data(calldata):
        console.print(f"• {action.describe(tokens)}")


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
