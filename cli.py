"""
SyncVault CLI
Commands: server, health, gen-secret, rotate-secrets, register, login, logout,
unlock, lock, reset, push, pull, publish-automation, remove-addon,
delete-account, status
"""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box

app = typer.Typer(
    name="syncvault",
    help="SyncVault — zero-knowledge configuration sync",
    add_completion=False,
)
console = Console()

logging.getLogger("httpx").setLevel(logging.WARNING)


def _notify(title: str, message: str, is_error: bool) -> None:
    style = "red" if is_error else "green"
    console.print(f"[bold {style}]{title}[/] {message}")


def _engine(server_url: Optional[str] = None):
    """Build a client engine, reusing the current vault session if there is one."""
    from syncvault.config.settings import settings
    from syncvault.sync.cloud import SyncCloudClient
    from syncvault.sync.engine import SyncEngine

    engine = SyncEngine(cloud=SyncCloudClient(server_url, config=settings), notifier=_notify)
    engine.vault.restore_session()
    return engine


def _run(coro_factory, server_url: Optional[str] = None):
    """Run one engine coroutine, mapping SyncVault errors to a non-zero exit."""
    from syncvault.errors import SyncVaultError

    async def main():
        engine = _engine(server_url)
        try:
            return await coro_factory(engine)
        finally:
            await engine.aclose()

    try:
        return asyncio.run(main())
    except SyncVaultError as e:
        console.print(f"[red]Error:[/] {e.message}")
        raise typer.Exit(1)


ServerOption = typer.Option(None, "--server", "-s", help="Sync Service URL")


# ── server ────────────────────────────────────────────────────────────────────

@app.command()
def server(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the Sync Service."""
    import uvicorn
    from syncvault.config.settings import settings

    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"[green]Starting SyncVault Sync Service[/] → http://{host}:{port} ({settings.db_type})")
    uvicorn.run("syncvault.main:app", host=host, port=port, reload=reload)


@app.command()
def health(server_url: Optional[str] = ServerOption):
    """Check whether the Sync Service and its storage are up."""
    from syncvault.sync.cloud import SyncCloudClient

    async def check():
        client = SyncCloudClient(server_url)
        try:
            return client.server_url, await client.health()
        finally:
            await client.aclose()

    url, ok = asyncio.run(check())
    if ok:
        console.print(f"[green]●[/] {url} is healthy")
    else:
        console.print(f"[red]●[/] {url} is unavailable")
        raise typer.Exit(1)


@app.command("gen-secret")
def gen_secret():
    """Print a fresh random server secret (64 hex chars)."""
    from syncvault.sync.encryption import generate_random_key
    console.print(generate_random_key())


@app.command("rotate-secrets")
def rotate_secrets(yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Re-seal stored automation documents under the current server secret."""
    from syncvault.config.settings import settings
    from syncvault.storage.database import Database
    from syncvault.sync.automation import AutomationService
    from syncvault.sync.secrets import ServerSecretChain
    from syncvault.sync.service import SyncService

    if not yes:
        typer.confirm("Re-encrypt all automation documents with the current secret?", abort=True)

    db = Database(settings)
    db.init()
    try:
        chain = ServerSecretChain.from_settings(settings)
        stats = AutomationService(db, chain, SyncService(db)).reencrypt_all()
    finally:
        db.close()

    table = Table(title="Secret rotation", box=box.ROUNDED)
    table.add_column("Documents", justify="right")
    table.add_column("Rotated", justify="right", style="green")
    table.add_column("Errors", justify="right", style="red")
    table.add_row(str(stats["total"]), str(stats["rotated"]), str(stats["errors"]))
    console.print(table)
    if stats["errors"]:
        raise typer.Exit(1)


# ── account ───────────────────────────────────────────────────────────────────

@app.command()
def register(
    name: str = typer.Option("", "--name", "-n", help="Display name for this account"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    server_url: Optional[str] = ServerOption,
):
    """Create a vault and claim a new sync id."""
    sync_id = _run(lambda engine: engine.register(password, name), server_url)
    console.print(Panel(
        f"[bold green]Account created[/]\n"
        f"Sync ID : [cyan]{sync_id}[/]\n"
        f"[dim]Keep the ID and password. Neither can be recovered.[/]",
        title="SyncVault",
        border_style="green",
    ))


@app.command()
def login(
    sync_id: str = typer.Argument(..., help="Sync ID"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    server_url: Optional[str] = ServerOption,
):
    """Restore an account on this device."""
    state = _run(lambda engine: engine.login(sync_id, password), server_url)
    console.print(f"Loaded [cyan]{len(state['accounts'])}[/] account(s).")


@app.command()
def unlock(
    password: str = typer.Option(..., prompt=True, hide_input=True),
    server_url: Optional[str] = ServerOption,
):
    """Unlock the local vault and refresh from the cloud."""
    if not _run(lambda engine: engine.unlock(password), server_url):
        console.print("[red]Incorrect password[/]")
        raise typer.Exit(1)
    console.print("[green]Vault unlocked[/]")


@app.command()
def lock():
    """Lock the local vault and forget the session key."""
    _engine().lock()
    console.print("[yellow]Vault locked[/]")


@app.command()
def reset(
    password: str = typer.Option(..., prompt="New password", hide_input=True, confirmation_prompt=True),
):
    """Wipe the local vault and state, then set a new master password."""
    typer.confirm("This erases all local data on this device. Continue?", abort=True)
    _run(lambda engine: engine.reset_vault(password))
    console.print("[green]Vault reset[/]")


@app.command()
def logout():
    """Forget the cloud account and clear local state on this device."""
    _run(lambda engine: engine.logout())


# ── sync ──────────────────────────────────────────────────────────────────────

@app.command()
def push(
    force: bool = typer.Option(False, "--force", help="Overwrite the remote record"),
    server_url: Optional[str] = ServerOption,
):
    """Upload local state."""
    if force:
        typer.confirm("Overwrite the cloud copy with this device's state?", abort=True)
        _run(lambda engine: engine.force_push_state(), server_url)
        console.print("[green]Cloud copy overwritten[/]")
        return
    if not _run(lambda engine: engine.sync_to_remote(), server_url):
        console.print("[yellow]Nothing pushed:[/] log in and unlock first")
        raise typer.Exit(1)


@app.command()
def pull(
    mirror: bool = typer.Option(False, "--mirror", help="Overwrite local state unconditionally"),
    server_url: Optional[str] = ServerOption,
):
    """Download remote state."""
    if mirror:
        typer.confirm("Overwrite this device's state with the cloud copy?", abort=True)
        _run(lambda engine: engine.force_mirror_state(), server_url)
        console.print("[green]Local state replaced[/]")
        return
    if not _run(lambda engine: engine.sync_from_remote(silent=False), server_url):
        console.print("[yellow]Nothing pulled:[/] log in and unlock first")
        raise typer.Exit(1)
    console.print("[green]Local state refreshed[/]")


@app.command("publish-automation")
def publish_automation(server_url: Optional[str] = ServerOption):
    """Send failover rules and webhook to the Sync Service."""
    _run(lambda engine: engine.publish_automation(), server_url)
    console.print("[green]Automation published[/]")


@app.command("remove-addon")
def remove_addon(
    account_id: str = typer.Argument(..., help="Account ID"),
    transport_url: str = typer.Argument(..., help="Addon transport URL"),
    server_url: Optional[str] = ServerOption,
):
    """Remove an addon from an account and push."""
    from syncvault.config.settings import settings

    async def remove(engine):
        removed = await engine.remove_addon(account_id, transport_url)
        # Hold the process open for the grace window so the release fires.
        await asyncio.sleep(settings.pending_removal_grace_seconds)
        return removed

    if _run(remove, server_url):
        console.print(f"[green]Removed[/] {transport_url}")
    else:
        console.print(f"[yellow]Not found:[/] {transport_url}")


@app.command("delete-account")
def delete_account(server_url: Optional[str] = ServerOption):
    """Delete the cloud record and every local trace of this account."""
    typer.confirm("Permanently delete this account from the cloud and this device?", abort=True)
    if _run(lambda engine: engine.delete_remote_account(), server_url):
        console.print("[green]Account deleted[/]")
    else:
        console.print(
            "[yellow]Local data cleared, but the server could not confirm deletion.[/] "
            "The remote record may still exist."
        )


@app.command()
def status():
    """Show vault and sync state for this device."""
    info = _engine().status()
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("", style="dim")
    table.add_column("")
    table.add_row("Sync ID", info["id"] or "[dim]—[/]")
    table.add_row("Name", info["name"] or "[dim]—[/]")
    table.add_row("Logged in", "[green]yes[/]" if info["authenticated"] else "[red]no[/]")
    table.add_row("Claimed", "yes" if info["claimed"] else "no")
    table.add_row("Vault", (
        "[red]not initialized[/]" if not info["vault"]["initialized"]
        else "[green]unlocked[/]" if info["vault"]["unlocked"] else "[yellow]locked[/]"
    ))
    table.add_row("Last synced", info["last_synced_at"] or "[dim]never[/]")
    table.add_row("Server", info["server_url"])
    console.print(Panel(table, title="SyncVault", border_style="cyan"))


if __name__ == "__main__":
    app()
