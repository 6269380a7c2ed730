"""Main Click CLI app for tpictl."""

import sys

import click

from tpictl import __version__
from tpictl.client import ApiVersion, BMCClient, BMCError
from tpictl.config import Settings, configure_logging, detect_local_host, load_credentials
from tpictl.output import print_error, print_result
from tpictl.token_cache import TokenCache


class BMCContext:
    """Holds connection settings and global flags."""

    def __init__(self):
        self.settings = Settings()
        self.json_mode = False
        self.verbose = False

    @property
    def host(self):
        return self.settings.host

    def token_cache(self):
        return TokenCache(self.settings.cache_dir)

    def get_client(self):
        """Create a BMCClient for the configured host."""
        s = self.settings
        if not s.host:
            s.host = detect_local_host() or ""
        if not s.host:
            raise BMCError(
                "No host specified. Please provide the Turing Pi hostname with --host.\n"
                "Example: tpictl --host=192.168.1.91 flash -n 1 -i image.img"
            )
        return BMCClient(
            s.host,
            s.username,
            s.password,
            api_version=ApiVersion(s.api_version),
            token_cache=self.token_cache(),
            try_default_credentials=s.try_default_credentials,
        )


pass_context = click.make_pass_decorator(BMCContext, ensure=True)


@click.group()
@click.option("--host", "-H", envvar="TPI_HOST", default="", help="BMC hostname or IP address.")
@click.option("--user", "-u", envvar="TPI_USER", default="", help="BMC username.")
@click.option("--password", "-p", envvar="TPI_PASSWORD", default="", help="BMC password.")
@click.option("--api-version", "-a", envvar="TPI_API_VERSION", default=ApiVersion.V1_1.value,
              type=click.Choice([v.value for v in ApiVersion]),
              help="Force which version of the BMC API to use.")
@click.option("--try-default-credentials", is_flag=True, envvar="TPI_TRY_DEFAULT_CREDENTIALS",
              help="Fall back to vendor default username/password pairs.")
@click.option("--cache-dir", envvar="TPI_CACHE_DIR", default=None, help="Directory for cached tokens.")
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format.")
@click.option("--verbose", "-v", is_flag=True, envvar="TPI_DEBUG", help="Verbose output.")
@click.version_option(version=__version__, prog_name="tpictl")
@click.pass_context
def cli(ctx, host, user, password, api_version, try_default_credentials, cache_dir, json_mode, verbose):
    """tpictl - Turing Pi BMC image flashing CLI"""
    configure_logging(verbose)

    bctx = BMCContext()
    bctx.json_mode = json_mode
    bctx.verbose = verbose

    bctx.settings = Settings(
        host=host,
        username=user,
        password=password,
        api_version=api_version,
        try_default_credentials=try_default_credentials,
        cache_dir=cache_dir,
    )

    # Credentials file only fills in what flags/env left empty
    s = bctx.settings
    if not s.has_credentials():
        file_user, file_password = load_credentials()
        if not s.username or s.username == file_user:
            s.username = s.username or file_user
            s.password = s.password or file_password

    ctx.obj = bctx


def run_operation(bctx, operation, label=None):
    """Run an operation against the BMC, printing its result.

    Args:
        bctx: BMCContext with settings and flags
        operation: callable(client) -> dict (the result data)
        label: optional label for the operation (used in verbose mode)

    Returns:
        the result dict
    """
    if bctx.verbose and not bctx.json_mode:
        click.echo(f"Running {label or 'operation'}...", err=True)

    try:
        client = bctx.get_client()
        data = operation(client)
    except BMCError as e:
        print_error(str(e), bctx.json_mode)
        sys.exit(1)
    except Exception as e:
        print_error(f"Unexpected error: {e}", bctx.json_mode)
        sys.exit(1)

    print_result(data, bctx.json_mode)
    return data


def main():
    cli(prog_name="tpictl")


# Import and register command groups
from tpictl.commands.flash import flash
from tpictl.commands.firmware import firmware
from tpictl.commands.auth import auth

cli.add_command(flash)
cli.add_command(firmware)
cli.add_command(auth)
