"""
XMTP Identity CLI - Main entry point

Command-line front end for creating, inspecting, exporting and wiping
identities. Key records go to ``<storage-path>`` and the serverless network
node lives in ``<storage-path>/network``; both accept local paths and
s3://, gs:// or az:// URIs.
"""

import asyncio
import base64
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..auth import LocalWalletSigner
from ..client.client import Client
from ..client.identity import IdentityManager
from ..core.config import ClientConfig, Environment
from ..core.errors import IdentityError
from ..core.network import BucketNetwork, NetworkEnvironmentRouter
from ..core.persistence import FilePersistence

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _network_path(storage_path: str) -> str:
    return storage_path.rstrip('/') + '/network'


def _manager(ctx) -> IdentityManager:
    storage_path = ctx.obj['storage_path']
    return IdentityManager(
        FilePersistence(storage_path),
        BucketNetwork.factory(_network_path(storage_path))
    )


def _config(ctx, **options) -> ClientConfig:
    return ClientConfig(environment=ctx.obj['env'], api_url=ctx.obj['api_url'], **options)


def _wallet(wallet_key: str) -> LocalWalletSigner:
    try:
        return LocalWalletSigner.from_hex(wallet_key)
    except ValueError as e:
        raise click.BadParameter(f"Not a 32-byte hex private key: {e}", param_hint="--wallet-key")


def _print_client(client: Client, title: str) -> None:
    info = client.get_user_info()
    table = Table(show_header=False, box=None)
    for field, value in info.items():
        table.add_row(f"[bold]{field}[/bold]", str(value))
    console.print(Panel.fit(table, title=title, style="bold green"))
    if client.session.publish_error is not None:
        console.print(f"[yellow]⚠ Not published: {client.session.publish_error}[/yellow]")


wallet_option = click.option('--wallet-key', '-w', envvar='XMTP_WALLET_KEY', prompt=True,
                             hide_input=True, help='Hex private key of the development wallet')


@click.group()
@click.option('--storage-path', '-s', default='./xmtp-data', envvar='XMTP_STORAGE_PATH',
              help='Storage path (local directory or cloud URI)')
@click.option('--env', '-e', 'env', default=Environment.DEV.value, envvar='XMTP_ENV',
              type=click.Choice([e.value for e in Environment]), help='Network environment')
@click.option('--api-url', envvar='XMTP_API_URL', default=None,
              help='Override the environment endpoint')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, storage_path: str, env: str, api_url: Optional[str], verbose: bool):
    """XMTP Identity - wallet-bound identity and key bundle management"""
    ctx.ensure_object(dict)
    ctx.obj['storage_path'] = storage_path
    ctx.obj['env'] = env
    ctx.obj['api_url'] = api_url
    ctx.obj['verbose'] = verbose

    _configure_logging(verbose)
    if verbose:
        console.print(f"[dim]Using storage path: {storage_path} ({env})[/dim]")


@cli.command()
def new_wallet():
    """Generate a development wallet"""
    wallet = LocalWalletSigner()
    console.print(Panel.fit("🔑 New Development Wallet", style="bold yellow"))
    console.print(f"Address:     {wallet.address}")
    console.print(f"Private key: {wallet.private_key_hex()}")
    console.print("[dim]Keep the private key secret; pass it with --wallet-key.[/dim]")


@cli.command()
@click.pass_context
def endpoint(ctx):
    """Show the endpoint the selected environment resolves to"""
    try:
        descriptor = NetworkEnvironmentRouter().resolve(ctx.obj['env'], ctx.obj['api_url'])
    except ValueError as e:
        console.print(f"❌ {e}")
        sys.exit(1)
    suffix = " (override)" if descriptor.is_override else ""
    console.print(f"{descriptor.environment.value if descriptor.environment else '-'}: "
                  f"{descriptor.api_url}{suffix}")


@cli.command()
@wallet_option
@click.option('--skip-publish', is_flag=True, help='Do not publish the contact bundle')
@click.option('--no-cache', is_flag=True, help='Do not write the encrypted key record')
@click.option('--app-version', default=None, help='Application tag for the contact bundle')
@click.pass_context
def bootstrap(ctx, wallet_key: str, skip_publish: bool, no_cache: bool,
              app_version: Optional[str]):
    """Create or load the identity for a wallet"""
    wallet = _wallet(wallet_key)
    config = _config(ctx, skip_network_publish=skip_publish,
                     persist_identity_cache=not no_cache, app_version=app_version)

    async def run_bootstrap():
        return await Client.create(wallet, config, manager=_manager(ctx))

    try:
        client = asyncio.run(run_bootstrap())
    except IdentityError as e:
        console.print(f"❌ Bootstrap failed: {e}")
        sys.exit(1)
    _print_client(client, "🪪 Identity Ready")


@cli.command()
@wallet_option
@click.option('--output', '-o', type=click.Path(dir_okay=False, writable=True), default=None,
              help='Write the raw bundle to a file instead of printing base64')
@click.pass_context
def export(ctx, wallet_key: str, output: Optional[str]):
    """Export the unencrypted key bundle"""
    wallet = _wallet(wallet_key)
    config = _config(ctx, skip_network_publish=True)

    async def run_export():
        client = await Client.create(wallet, config, manager=_manager(ctx))
        return client.export_key_bundle()

    try:
        bundle = asyncio.run(run_export())
    except IdentityError as e:
        console.print(f"❌ Export failed: {e}")
        sys.exit(1)

    if output:
        Path(output).write_bytes(bundle)
        console.print(f"✅ Wrote key bundle to {output}")
    else:
        click.echo(base64.b64encode(bundle).decode('ascii'))


@cli.command(name='import')
@wallet_option
@click.argument('bundle_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--skip-publish', is_flag=True, help='Do not publish the contact bundle')
@click.pass_context
def import_bundle(ctx, wallet_key: str, bundle_file: str, skip_publish: bool):
    """Adopt a previously exported key bundle"""
    wallet = _wallet(wallet_key)
    config = _config(ctx, skip_network_publish=skip_publish)
    raw = Path(bundle_file).read_bytes()

    async def run_import():
        return await Client.from_key_bundle(raw, wallet, config, manager=_manager(ctx))

    try:
        client = asyncio.run(run_import())
    except IdentityError as e:
        console.print(f"❌ Import failed: {e}")
        sys.exit(1)
    _print_client(client, "📥 Identity Imported")


@cli.command()
@wallet_option
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def wipe(ctx, wallet_key: str, yes: bool):
    """Delete the stored key record for a wallet"""
    wallet = _wallet(wallet_key)
    env = Environment(ctx.obj['env'])

    if not yes and not click.confirm(f"Delete the {env.value} key record for {wallet.address}?"):
        console.print("Aborted.")
        return

    try:
        asyncio.run(_manager(ctx).wipe(wallet.address, env))
    except IdentityError as e:
        console.print(f"❌ Wipe failed: {e}")
        sys.exit(1)
    console.print(f"🗑️  Removed key record for {wallet.address} ({env.value})")


@cli.command()
def version():
    """Show version information"""
    console.print(Panel.fit(f"XMTP Identity v{__version__}", style="bold blue"))
    console.print("Wallet-bound identity and key bundle management")
    console.print("Licensed under AGPLv3")


def main():
    """Main entry point"""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n👋 Interrupted")
        sys.exit(130)


if __name__ == '__main__':
    main()
