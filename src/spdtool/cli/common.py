"""Helpers shared by the CLI command groups."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import click

from spdtool.device.client import SpdToolClient
from spdtool.exceptions import SpdToolError


def parse_int(ctx: click.Context, param: click.Parameter, value: str | None) -> int | None:
    """Click callback accepting hex (0x50) or decimal integers."""
    if value is None:
        return None
    try:
        return int(value, 0)
    except ValueError as exc:
        raise click.BadParameter(f"{value!r} is not a number (use hex like 0x50 or decimal)") from exc


def port_options(func):
    """Attach the shared --port/--baud options to a command or group."""
    func = click.option("--baud", type=int, default=115200, help="Baudrate (default: 115200)")(func)
    func = click.option(
        "--port", "-p", required=True, help="Serial port (e.g. /dev/ttyACM0 or COM3)"
    )(func)
    return func


@contextmanager
def open_client(ctx: click.Context, port: str, baud: int) -> Iterator[SpdToolClient]:
    """Connect to the programmer; spdtool errors are reported and exit with status 1."""
    client = SpdToolClient.from_port(port, baudrate=baud)
    try:
        client.connect()
        yield client
    except SpdToolError as exc:
        click.echo(f"ERROR: {exc}", err=True)
        ctx.exit(1)
    finally:
        client.close()


@contextmanager
def group_client(ctx: click.Context) -> Iterator[SpdToolClient]:
    """Client for a subcommand whose group took --port/--baud."""
    with open_client(ctx, ctx.obj["port"], ctx.obj["baud"]) as client:
        yield client


def echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2))


def progress_bar(length: int, label: str):
    """Progress bar drawn on stderr so stdout carries only command output."""
    return click.progressbar(length=max(length, 1), label=label, file=sys.stderr)


def progress_reporter(bar) -> Callable[[int, int], None]:
    """Adapt a click progress bar to a ``(done, total)`` callback."""
    state = {"done": 0}

    def _update(done: int, total: int) -> None:
        bar.update(done - state["done"])
        state["done"] = done

    return _update
