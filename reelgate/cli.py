"""Reelgate CLI - server and account administration."""

import asyncio
import secrets

import typer
from rich.console import Console
from rich.table import Table

from .config import settings
from .security.passwords import ScryptParams, hash_password

app = typer.Typer(
    name="reelgate",
    help="Reelgate: session and credential security service",
    no_args_is_help=True,
)
console = Console()


def _params() -> ScryptParams:
    return ScryptParams(n=settings.scrypt_n, r=settings.scrypt_r, p=settings.scrypt_p)


@app.command("serve")
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the auth service."""
    import uvicorn

    console.print(f"[bold cyan]Starting Reelgate at http://{host}:{port}[/bold cyan]")
    uvicorn.run(
        "reelgate.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        proxy_headers=False,
    )


@app.command("generate-key")
def generate_key(
    length: int = typer.Option(48, "--bytes", "-b", help="Random bytes before encoding"),
):
    """Print a random key suitable for REELGATE_SESSION_SECRET or REELGATE_SECRET_KEY."""
    if length < 32:
        console.print("[red]Keys must be at least 32 bytes[/red]")
        raise typer.Exit(1)
    console.print(secrets.token_urlsafe(length), soft_wrap=True, highlight=False)


@app.command("hash-password")
def hash_password_cmd(
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Hash a password with the configured scrypt parameters."""
    console.print(hash_password(password, _params()), soft_wrap=True, highlight=False, markup=False)


@app.command("create-account")
def create_account(
    username: str = typer.Argument(..., help="Login name"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    email: str = typer.Option(None, "--email", "-e", help="Email address"),
    groups: str = typer.Option("users", "--groups", "-g", help="Comma-separated groups"),
):
    """Create a local account."""
    from .database import create_schema, session_scope
    from .services import accounts

    async def _create():
        if "sqlite" in settings.database_url:
            await create_schema()
        async with session_scope() as db:
            return await accounts.create_account(
                db, username=username, password=password, email=email, groups=groups, params=_params()
            )

    try:
        account = asyncio.run(_create())
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    table = Table(title="Account created")
    table.add_column("ID", style="cyan")
    table.add_column("Username", style="white")
    table.add_column("Groups", style="yellow")
    table.add_row(str(account.id), account.username, ", ".join(account.group_list))
    console.print(table)


@app.command("revoke-sessions")
def revoke_sessions(
    username: str = typer.Argument(..., help="Account whose sessions to revoke"),
):
    """Revoke every active session of an account."""
    from .database import session_scope
    from .services import accounts, session_store

    async def _revoke():
        async with session_scope() as db:
            account = await accounts.get_account_by_username(db, username)
            if account is None:
                return None
            return await session_store.revoke_all_except(db, account.id, reason="cli_revoked")

    revoked = asyncio.run(_revoke())
    if revoked is None:
        console.print(f"[red]No account named {username}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Revoked {revoked} session(s) for {username}[/green]")


@app.command("purge-sessions")
def purge_sessions(
    grace_days: int = typer.Option(7, "--grace-days", help="Keep revoked sessions this many days"),
):
    """Delete expired sessions, old revoked sessions, and stale challenges."""
    from datetime import timedelta

    from .database import async_session_factory, session_scope
    from .services import session_store, webauthn_svc
    from .services.sso.store import SqlHandshakeStore

    async def _purge():
        async with session_scope() as db:
            sessions = await session_store.purge_expired(db, revoked_grace=timedelta(days=grace_days))
            challenges = await webauthn_svc.purge_expired_challenges(db)
        handshakes = await SqlHandshakeStore(async_session_factory).purge(settings.handshake_max_age_seconds)
        return sessions, challenges, handshakes

    sessions, challenges, handshakes = asyncio.run(_purge())
    table = Table(title="Purged")
    table.add_column("Kind", style="cyan")
    table.add_column("Rows", style="yellow", justify="right")
    table.add_row("Sessions", str(sessions))
    table.add_row("WebAuthn challenges", str(challenges))
    table.add_row("SSO handshakes", str(handshakes))
    console.print(table)


if __name__ == "__main__":
    app()
