"""CLI subcommands for programmer settings, pins and bus monitoring."""

from __future__ import annotations

import json

import click

from spdtool.cli.common import echo_json, group_client, parse_int, port_options
from spdtool.protocol.types import ClockMode

_CLOCK_CHOICES = {"100": ClockMode.STANDARD_100KHZ, "400": ClockMode.FAST_400KHZ}


def _on_off(state: bool) -> str:
    return "on" if state else "off"


@click.group()
@port_options
@click.pass_context
def device(ctx: click.Context, port: str, baud: int) -> None:
    """Programmer settings and GPIO pins."""
    ctx.ensure_object(dict)
    ctx.obj["port"] = port
    ctx.obj["baud"] = baud


@device.command("clock")
@click.option("--set", "new_mode", type=click.Choice(sorted(_CLOCK_CHOICES)), default=None,
              help="Set the I2C bus clock in kHz")
@click.pass_context
def clock(ctx: click.Context, new_mode: str | None) -> None:
    """Show or set the I2C bus clock."""
    with group_client(ctx) as client:
        if new_mode is not None and not client.set_clock_mode(_CLOCK_CHOICES[new_mode]):
            click.echo("ERROR: Device refused the clock change.", err=True)
            ctx.exit(1)
        mode = client.get_clock_mode()
        if ctx.obj.get("json_output"):
            echo_json({"clock_mode": mode.name})
        else:
            click.echo(f"I2C clock: {'400' if mode == ClockMode.FAST_400KHZ else '100'} kHz")


@device.command("name")
@click.option("--set", "new_name", default=None, help="New device name (1-16 ASCII characters)")
@click.pass_context
def name(ctx: click.Context, new_name: str | None) -> None:
    """Show or set the programmer's name."""
    with group_client(ctx) as client:
        if new_name is not None and not client.set_name(new_name):
            click.echo("ERROR: Device refused the new name.", err=True)
            ctx.exit(1)
        current = client.get_name()
        if ctx.obj.get("json_output"):
            echo_json({"name": current})
        else:
            click.echo(f"Name: {current}")


@device.command("pins")
@click.option("--hv", type=click.Choice(["on", "off"]), default=None,
              help="Switch the 9V high-voltage supply used for programming")
@click.option("--sa1", type=click.Choice(["on", "off"]), default=None, help="Drive the SA1 pin")
@click.pass_context
def pins(ctx: click.Context, hv: str | None, sa1: str | None) -> None:
    """Show or set the HV and SA1 pins."""
    with group_client(ctx) as client:
        if hv is not None:
            ok = client.enable_high_voltage() if hv == "on" else client.disable_high_voltage()
            if not ok:
                click.echo("ERROR: Device refused the HV change.", err=True)
                ctx.exit(1)
        if sa1 is not None and not client.set_sa1_state(sa1 == "on"):
            click.echo("ERROR: Device refused the SA1 change.", err=True)
            ctx.exit(1)

        hv_state = client.get_high_voltage_state()
        sa1_state = client.get_sa1_state()
        if ctx.obj.get("json_output"):
            echo_json({"hv": hv_state, "sa1": sa1_state})
        else:
            click.echo(f"HV:  {_on_off(hv_state)}")
            click.echo(f"SA1: {_on_off(sa1_state)}")


@device.command("reset-pins")
@click.pass_context
def reset_pins(ctx: click.Context) -> None:
    """Return every pin to its default state."""
    with group_client(ctx) as client:
        if not client.reset_pins():
            click.echo("ERROR: Pin reset failed.", err=True)
            ctx.exit(1)
        click.echo("Pins reset.")


@device.command("settings")
@click.option("--offset", default="0", callback=parse_int, help="Offset in settings storage")
@click.option("--length", default="32", callback=parse_int, help="Bytes to read (1-32)")
@click.pass_context
def settings(ctx: click.Context, offset: int, length: int) -> None:
    """Read the programmer's internal settings storage."""
    with group_client(ctx) as client:
        data = client.read_internal_eeprom(offset, length)
        if data is None:
            click.echo("ERROR: Settings read failed.", err=True)
            ctx.exit(1)
            return
        if ctx.obj.get("json_output"):
            echo_json({"offset": offset, "data": data.hex()})
        else:
            click.echo(f"0x{offset:02X}: {data.hex(' ')}")


@device.command("factory-reset")
@click.option("--yes", is_flag=True, help="Confirm erasing all programmer settings")
@click.pass_context
def factory_reset(ctx: click.Context, yes: bool) -> None:
    """Erase all settings stored on the programmer."""
    if not yes:
        click.echo("ERROR: Factory reset erases all settings; pass --yes to proceed.", err=True)
        ctx.exit(2)
        return

    with group_client(ctx) as client:
        if not client.factory_reset():
            click.echo("ERROR: Factory reset failed.", err=True)
            ctx.exit(1)
        click.echo("Factory reset complete.")


@device.command("monitor")
@click.option("--interval", type=float, default=2.0, help="Seconds between rescans (default: 2)")
@click.option("--count", type=int, default=0, help="Number of rescans (0=until interrupted)")
@click.pass_context
def monitor(ctx: click.Context, interval: float, count: int) -> None:
    """Watch the SPD bus and report modules as they come and go.

    With --json-output, one JSON object is printed per line: the initial
    population first, then the result of every rescan.
    """
    from spdtool.core.bus_monitor import BusMonitor

    json_output = ctx.obj.get("json_output")

    def _echo_alert(event) -> None:
        click.echo(str(event))

    with group_client(ctx) as client:
        unsubscribe = None if json_output else client.subscribe_alerts(_echo_alert)
        bus = BusMonitor(client, interval_s=interval)
        try:
            present = bus.start()
            if json_output:
                click.echo(json.dumps({"present": present}))
            else:
                click.echo(f"Modules present: {_addresses(present)}")

            polls = 0
            while count == 0 or polls < count:
                change = bus.poll()
                polls += 1
                if json_output:
                    click.echo(change.model_dump_json())
                else:
                    if change.added:
                        click.echo(f"Added: {_addresses(change.added)}")
                    if change.removed:
                        click.echo(f"Removed: {_addresses(change.removed)}")
        except KeyboardInterrupt:
            pass
        finally:
            bus.stop()
            if unsubscribe is not None:
                unsubscribe()


def _addresses(addresses: list[int]) -> str:
    return ", ".join(f"0x{a:02X}" for a in addresses) or "none"
