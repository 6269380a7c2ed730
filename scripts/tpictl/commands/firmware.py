"""Firmware commands: BMC firmware upgrade."""

import os

import click

from tpictl.cli import pass_context, run_operation
from tpictl.client import BMCError
from tpictl.flash import upgrade_firmware


@click.group()
def firmware():
    """BMC firmware commands."""
    pass


@firmware.command()
@click.option("--file", "-f", "file_path", required=True, help="Firmware file path.")
@click.option("--sha256", default=None, help="SHA256 checksum for verification.")
@pass_context
def upgrade(bctx, file_path, sha256):
    """Upgrade the BMC firmware. The BMC reboots once it is applied."""
    def _op(client):
        if not os.path.isfile(file_path):
            raise BMCError(f"firmware file does not exist: {file_path}")
        upgrade_firmware(client, file_path, sha256)
        return {"message": f"Firmware upgrade with {os.path.basename(file_path)} started"}

    run_operation(bctx, _op, label="firmware upgrade")
