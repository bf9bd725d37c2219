"""Operator-facing console output.

Prefixed, coloured status lines on top of click.  Colours are dropped
automatically when stdout is not a terminal.
"""

import click


def _emit(tag, colour, msg, err=False):
    click.echo(f"{click.style(tag, fg=colour, bold=colour == 'yellow')} {msg}", err=err)


def info(msg):
    _emit("[INFO] ", "cyan", msg)


def ok(msg):
    _emit("[OK]   ", "green", msg)


def warn(msg):
    _emit("[WARN] ", "yellow", msg)


def error(msg):
    _emit("[ERROR]", "red", msg, err=True)


def dry_run(msg):
    """Report an action that simulate mode skipped."""
    info(f"[DRY-RUN] {msg}")


def command(cmd):
    """Echo an external command before it runs."""
    click.echo(f"  + {' '.join(str(c) for c in cmd)}")


def banner(lines, colour="green"):
    rule = "=" * 66
    click.secho(rule, fg=colour)
    for line in lines:
        click.secho(f"  {line}", fg=colour)
    click.secho(rule, fg=colour)
