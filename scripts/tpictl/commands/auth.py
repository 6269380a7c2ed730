"""Auth commands: login, logout, status."""

import click

from tpictl.cli import pass_context, run_operation
from tpictl.output import print_result


@click.group()
def auth():
    """Manage authentication and token persistence."""
    pass


@auth.command()
@pass_context
def login(bctx):
    """Authenticate and cache the token for future use.

    Uses --user/--password when given. Without them the vendor default
    credentials are tried if --try-default-credentials is set.
    """
    def _op(client):
        client.force_authenticate()
        return {"message": f"Successfully authenticated to {client.host} and cached token"}

    run_operation(bctx, _op, label="auth login")


@auth.command()
@pass_context
def logout(bctx):
    """Remove the cached token (for every host when --host is not given)."""
    cache = bctx.token_cache()
    if bctx.host:
        cache.delete(bctx.host)
        data = {"message": f"Successfully logged out from {bctx.host} - token cache cleared"}
    else:
        removed = cache.clear()
        data = {
            "message": "Successfully logged out - all token caches cleared",
            "hosts": [h or "default" for h in removed],
        }
    print_result(data, bctx.json_mode)


@auth.command()
@pass_context
def status(bctx):
    """Check whether a cached token exists."""
    cache = bctx.token_cache()
    if bctx.host:
        authenticated = cache.get(bctx.host) is not None
        if authenticated:
            message = f"Authenticated to {bctx.host} (token is cached)"
        else:
            message = f"Not authenticated to {bctx.host} (no cached token)"
        data = {"host": bctx.host, "authenticated": authenticated, "message": message}
        if not bctx.json_mode:
            data = {"message": message}
        print_result(data, bctx.json_mode)
        return

    hosts = [h or "default" for h in cache.list_hosts()]
    if bctx.json_mode:
        print_result({"hosts": hosts}, json_mode=True)
    elif not hosts:
        click.echo("No cached authentication tokens found")
    else:
        click.echo("Cached authentication tokens found for:")
        for h in hosts:
            click.echo(f"- {h}")
