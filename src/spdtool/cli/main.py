"""spdtool CLI - command-line interface for the RP2040 SPD programmer."""

from __future__ import annotations

import click

from spdtool.cli.common import echo_json, open_client, parse_int, port_options
from spdtool.utils.logging import setup_logging


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-output", is_flag=True, help="Output in JSON format")
@click.pass_context
def cli(ctx: click.Context, debug: bool, json_output: bool) -> None:
    """spdtool - read and program DDR3/DDR4/DDR5 SPD EEPROMs and PMICs."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["json_output"] = json_output
    setup_logging(level="DEBUG" if debug else "INFO", json_output=json_output)


@cli.command()
@click.pass_context
def ports(ctx: click.Context) -> None:
    """List serial ports that may host a programmer."""
    from spdtool.transport import list_serial_ports

    found = list_serial_ports()
    if ctx.obj.get("json_output"):
        echo_json(found)
    elif not found:
        click.echo("No serial ports found.")
    else:
        click.echo(f"Found {len(found)} serial port(s):")
        for name in found:
            click.echo(f"  {name}")


@cli.command()
@port_options
@click.pass_context
def info(ctx: click.Context, port: str, baud: int) -> None:
    """Show programmer identity, bus clock and RSWP support."""
    with open_client(ctx, port, baud) as client:
        identity = client.identity
        clock = client.get_clock_mode()
        rswp = client.get_rswp_support()
        if ctx.obj.get("json_output"):
            echo_json({
                **identity.model_dump(),
                "clock_mode": clock.name,
                "rswp_support": rswp.model_dump(),
            })
        else:
            click.echo(f"Port:          {identity.port}")
            click.echo(f"Name:          {identity.name}")
            click.echo(f"Firmware:      {identity.version_text} (0x{identity.version:08X})")
            click.echo(f"I2C clock:     {'400 kHz' if clock else '100 kHz'}")
            click.echo(f"RSWP support:  {rswp}")


@cli.command()
@port_options
@click.pass_context
def scan(ctx: click.Context, port: str, baud: int) -> None:
    """Scan the I2C bus for SPD devices."""
    with open_client(ctx, port, baud) as client:
        found = client.scan_bus()
        if ctx.obj.get("json_output"):
            echo_json([f"0x{a:02X}" for a in found])
        elif not found:
            click.echo("No SPD devices found.")
        else:
            click.echo(f"Found {len(found)} SPD device(s):")
            for address in found:
                click.echo(f"  0x{address:02X}")


@cli.command()
@click.argument("address", required=False, callback=parse_int)
@port_options
@click.pass_context
def detect(ctx: click.Context, address: int | None, port: str, baud: int) -> None:
    """Detect module type and SPD size (all scanned addresses if none given)."""
    with open_client(ctx, port, baud) as client:
        addresses = [address] if address is not None else client.scan_bus()
        modules = [client.detect_module(a) for a in addresses]
        if ctx.obj.get("json_output"):
            echo_json([m.model_dump(mode="json") for m in modules])
        elif not modules:
            click.echo("No SPD devices found.")
        else:
            for m in modules:
                click.echo(str(m))


from spdtool.cli.device import device  # noqa: E402
from spdtool.cli.pmic import pmic  # noqa: E402
from spdtool.cli.spd import spd  # noqa: E402

cli.add_command(device)
cli.add_command(pmic)
cli.add_command(spd)


if __name__ == "__main__":
    cli()
