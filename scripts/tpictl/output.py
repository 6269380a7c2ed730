"""Output formatting for tpictl - human-readable and JSON modes."""

import json

import click

from tpictl.progress import ProgressReporter


def format_json(data):
    """Format data as pretty-printed JSON."""
    return json.dumps(data, indent=2)


def format_bytes(num):
    """Format a byte count with binary units, e.g. 1.5 GiB."""
    unit = 1024
    if num < unit:
        return f"{int(num)} B"
    div, exp = unit, 0
    n = num // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{num / div:.1f} {'KMGTPE'[exp]}iB"


def format_duration(seconds):
    """Format seconds as 1h2m3s, dropping leading zero units."""
    seconds = int(round(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def print_result(data, json_mode=False, file=None):
    """Print a result dict in human-readable or JSON format."""
    if json_mode:
        click.echo(format_json(data), file=file)
    else:
        click.echo(_format_human(data), file=file)


def print_error(message, json_mode=False):
    """Print an error message, respecting --json flag."""
    if json_mode:
        click.echo(format_json({"error": message}), err=True)
    else:
        click.echo(f"Error: {message}", err=True)


def _format_human(data):
    """Convert a data dict to human-readable text."""
    if not data:
        return "No data."

    if "message" in data and len(data) == 1:
        return data["message"]

    lines = []
    for key, value in data.items():
        if isinstance(value, dict):
            lines.append(f"  {key}:")
            for k2, v2 in value.items():
                lines.append(f"    {k2}: {v2}")
        elif isinstance(value, list):
            lines.append(f"  {key}:")
            for item in value:
                lines.append(f"    - {item}")
        else:
            lines.append(f"  {key}: {value}")
    return "\n".join(lines)


class ConsoleProgressReporter(ProgressReporter):
    """Renders flash progress as a single self-overwriting terminal line."""

    def __init__(self, json_mode=False, logger=None):
        super().__init__(logger)
        self.json_mode = json_mode

    def _echo(self, text, nl=True, err=False):
        if not self.json_mode:
            click.echo(text, nl=nl, err=err)

    def progress(self, update):
        speed = f"{format_bytes(update.speed)}/s" if update.speed else "calculating..."
        eta = format_duration(update.eta) if update.eta else "calculating..."
        self._echo(
            f"\rProgress: {update.percent:.1f}% "
            f"({format_bytes(update.bytes_written)} / {format_bytes(update.total)}) "
            f"• Speed: {speed} • Elapsed: {format_duration(update.elapsed)} "
            f"• ETA: {eta}    ",
            nl=False,
        )

    def verifying(self):
        self._echo("\nVerifying checksum...")

    def waiting(self):
        self._echo("\rWaiting for flashing to complete...", nl=False)

    def done(self):
        self._echo("\nFlashing completed successfully")

    def poll_error(self, error, count, limit):
        if "timed out" in str(error):
            self._echo(f"\nWaiting for BMC response... ({count}/{limit})", nl=False, err=True)
        else:
            self._echo(f"\nError checking progress: {error}. Retrying... ({count}/{limit})", nl=False, err=True)

    def resumed(self, count):
        self._echo(f"\nResumed progress monitoring after {count} errors")
