"""CLI for the Prayantra auth client."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from prayantra_auth.client import AuthClient
from prayantra_auth.config import AuthConfig
from prayantra_auth.endpoints import UserRole
from prayantra_auth.errors import AuthError, MalformedPayload, PairingRejected, RateLimited, ResendNotAllowed
from prayantra_auth.flow import FlowState

app = typer.Typer(name='prayantra-auth', help='Prayantra mobile auth client')
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(None, '--base-url', help='Backend URL (default: PRAYANTRA_BASE_URL)'),
    data_dir: Optional[Path] = typer.Option(None, '--data-dir', help='Storage directory (default: ~/.prayantra)'),
    verbose: bool = typer.Option(False, '--verbose', '-v', help='Enable debug logging'),
):
    """Log in, inspect and manage the Prayantra session stored on this machine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    overrides = {}
    if base_url:
        overrides['base_url'] = base_url
    if data_dir:
        overrides['data_dir'] = data_dir
    ctx.obj = overrides


def _make_client(ctx: typer.Context) -> AuthClient:
    return AuthClient(AuthConfig.from_env(**(ctx.obj or {})))


def _run(ctx: typer.Context, command):
    """Run ``command(client)`` on a fresh event loop, reporting auth errors."""

    async def runner():
        async with _make_client(ctx) as client:
            return await command(client)

    try:
        return asyncio.run(runner())
    except RateLimited as e:
        console.print(f'[bold red]Rate limited:[/bold red] {e.message}. Retry in {e.retry_after_seconds}s.')
        raise typer.Exit(1)
    except AuthError as e:
        console.print(f'[bold red]Error:[/bold red] {e}')
        raise typer.Exit(1)


@app.command()
def identity(ctx: typer.Context):
    """Show the device identity, creating it on first use."""

    async def command(client: AuthClient):
        device = await client.device_identity()
        table = Table(title='Device Identity')
        table.add_column('Field', style='cyan')
        table.add_column('Value')
        table.add_row('Device ID', device.device_id)
        table.add_row('User Agent', device.user_agent)
        table.add_row('Fingerprint', f'{device.fingerprint[:32]}...')
        console.print(table)

    _run(ctx, command)


@app.command()
def login(
    ctx: typer.Context,
    phone: Optional[str] = typer.Option(None, '--phone', '-p', help='Phone number without country code'),
    country_code: str = typer.Option('+91', '--country-code', help='Dial prefix'),
    role: UserRole = typer.Option(UserRole.ADMIN, '--role', help='Account type'),
    otp: Optional[str] = typer.Option(None, '--otp', help='OTP (prompted when omitted)'),
    mpin: Optional[str] = typer.Option(None, '--mpin', help='MPIN (prompted when omitted)'),
):
    """Log in with phone number, OTP and MPIN."""

    async def command(client: AuthClient):
        flow = client.login_flow(role)
        result = await flow.restore()
        if result.state == FlowState.AUTHENTICATED:
            console.print('[green]✓[/green] Already logged in')
            return

        if result.state == FlowState.MPIN_ENTRY and phone and phone != flow.phone_number:
            flow.reset()

        if flow.state == FlowState.PHONE_ENTRY:
            number = phone or typer.prompt('Phone number')
            result = await flow.submit_phone(number, country_code)

        if result.state == FlowState.OTP:
            console.print(f'OTP sent to [bold]{flow.full_phone_number}[/bold]')
            code = otp or typer.prompt('OTP')
            result = await flow.verify_otp(code)

        if result.state == FlowState.MPIN_SETUP:
            console.print('Set up your 6-digit MPIN')
            new_mpin = mpin or typer.prompt('New MPIN', hide_input=True)
            confirm = mpin or typer.prompt('Confirm MPIN', hide_input=True)
            result = await flow.setup_mpin(new_mpin, confirm)
        elif result.state == FlowState.MPIN_ENTRY:
            value = mpin or typer.prompt('MPIN', hide_input=True)
            result = await flow.verify_mpin(value)

        if result.state == FlowState.AUTHENTICATED:
            console.print('[bold green]✓ Logged in[/bold green]')

    _run(ctx, command)


@app.command()
def status(ctx: typer.Context):
    """Show the stored session and account."""

    async def command(client: AuthClient):
        tokens = await client.session.load_tokens()
        credentials = await client.session.load_credentials()

        table = Table(title='Session')
        table.add_column('Field', style='cyan')
        table.add_column('Value')
        if credentials:
            table.add_row('Role', credentials.role.value)
            table.add_row('Account ID', credentials.subject_id)
            table.add_row('Phone', credentials.full_phone_number)
        else:
            table.add_row('Account', '[dim]none[/dim]')
        if tokens:
            valid = await client.validate_session()
            table.add_row('Session', '[green]valid[/green]' if valid else '[red]invalid[/red]')
        else:
            table.add_row('Session', '[yellow]logged out[/yellow]')
        console.print(table)

    _run(ctx, command)


@app.command()
def refresh(ctx: typer.Context):
    """Renew the access token now."""

    async def command(client: AuthClient):
        await client.coordinator.refresh_tokens()
        console.print('[green]✓[/green] Tokens refreshed')

    _run(ctx, command)


@app.command()
def logout(
    ctx: typer.Context,
    full: bool = typer.Option(False, '--full', help='Also forget the account and device identity'),
):
    """Log out. Without --full the next login only asks for the MPIN."""

    async def command(client: AuthClient):
        if full:
            await client.full_logout()
            console.print('[green]✓[/green] Logged out and removed account from this device')
        else:
            await client.logout()
            console.print('[green]✓[/green] Logged out')

    _run(ctx, command)


@app.command('forgot-mpin')
def forgot_mpin(
    ctx: typer.Context,
    otp: Optional[str] = typer.Option(None, '--otp', help='Reset OTP (prompted when omitted)'),
    new_mpin: Optional[str] = typer.Option(None, '--new-mpin', help='New MPIN (prompted when omitted)'),
):
    """Reset the MPIN of the stored account with an OTP."""

    async def command(client: AuthClient):
        flow = client.login_flow()
        await flow.restore()
        reset_flow = flow.forgot_mpin()
        try:
            await reset_flow.initiate()
        except ResendNotAllowed as e:
            console.print(f'[yellow]⚠[/yellow] {e}')
            return
        console.print(f'Reset OTP sent to [bold]{reset_flow.phone_number}[/bold]')

        code = otp or typer.prompt('OTP')
        value = new_mpin or typer.prompt('New MPIN', hide_input=True)
        confirm = new_mpin or typer.prompt('Confirm MPIN', hide_input=True)
        await reset_flow.reset(code, value, confirm)
        console.print('[bold green]✓ MPIN reset.[/bold green] Log in with your new MPIN.')

    _run(ctx, command)


@app.command()
def pair(
    ctx: typer.Context,
    payload: str = typer.Argument(..., help='Scanned web-login QR payload'),
):
    """Log a web browser in with this device's session."""

    async def command(client: AuthClient):
        try:
            await client.pairing.pair(payload)
        except MalformedPayload as e:
            console.print(f'[bold red]Invalid QR code:[/bold red] {e}')
            raise typer.Exit(2)
        except PairingRejected as e:
            console.print(f'[bold red]Pairing declined:[/bold red] {e.message}')
            raise typer.Exit(1)
        console.print('[bold green]✓ Web login initiated.[/bold green] Check your browser.')

    _run(ctx, command)


if __name__ == '__main__':
    app()
