"""Flash command: write an OS image to a node."""

import os

import click

from tpictl.cli import pass_context, run_operation
from tpictl.client import BMCError
from tpictl.flash import flash_node, flash_node_local
from tpictl.output import ConsoleProgressReporter


@click.command()
@click.option("--node", "-n", required=True, type=click.IntRange(1, 4), help="Node number [1-4].")
@click.option("--image-path", "-i", required=True, help="Update a node with the given image.")
@click.option("--sha256", default=None, help="SHA256 checksum for verification.")
@click.option("--skip-crc", is_flag=True, help="Opt out of the CRC integrity check.")
@click.option("--local", "-l", is_flag=True,
              help="Update a node with an image accessible from the BMC filesystem.")
@pass_context
def flash(bctx, node, image_path, sha256, skip_crc, local):
    """Flash a given node with an OS image."""
    file_name = os.path.basename(image_path)

    if local:
        def _op(client):
            if not bctx.json_mode:
                click.echo(f"Flashing node {node} from local file {image_path}...")
            flash_node_local(client, node, image_path)
            return {"message": "Flash operation completed successfully"}

        run_operation(bctx, _op, label="local flash")
        return

    def _op(client):
        if not os.path.isfile(image_path):
            raise BMCError(f"image file does not exist: {image_path}")
        if not bctx.json_mode:
            click.echo(f"Flashing node {node} with {file_name}...")
        state = flash_node(
            client, node, image_path,
            sha256=sha256,
            skip_crc=skip_crc,
            reporter=ConsoleProgressReporter(json_mode=bctx.json_mode),
        )
        return {
            "message": "Flash operation completed successfully",
            "node": node,
            "file": file_name,
            "state": state.value,
        }

    run_operation(bctx, _op, label="flash")
