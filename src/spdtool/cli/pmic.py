"""CLI subcommands for PMIC discovery and register access."""

from __future__ import annotations

from pathlib import Path

import click

from spdtool.cli.common import (
    echo_json,
    group_client,
    parse_int,
    port_options,
    progress_bar,
    progress_reporter,
)


@click.group()
@port_options
@click.pass_context
def pmic(ctx: click.Context, port: str, baud: int) -> None:
    """DDR5 PMIC operations (addresses 0x48-0x4F)."""
    ctx.ensure_object(dict)
    ctx.obj["port"] = port
    ctx.obj["baud"] = baud


@pmic.command("scan")
@click.option("--attempts", type=int, default=3, help="Scan passes before giving up")
@click.pass_context
def scan(ctx: click.Context, attempts: int) -> None:
    """Probe 0x48-0x4F and show PMIC identification."""
    from spdtool.core.pmic_manager import PmicManager

    with group_client(ctx) as client:
        mgr = PmicManager(client)
        infos = [mgr.get_info(a) for a in mgr.scan(attempts=attempts)]
        if ctx.obj.get("json_output"):
            echo_json([i.model_dump() for i in infos])
        elif not infos:
            click.echo("No PMIC devices found.")
        else:
            for i in infos:
                ident = f"0x{i.device_id:04X}" if i.device_id is not None else "unknown"
                rev = f" (Rev: 0x{i.revision:02X})" if i.revision is not None else ""
                click.echo(f"  0x{i.address:02X}: PMIC {ident}{rev}")


@pmic.command("dump")
@click.argument("address", callback=parse_int)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path),
              help="Write the register image to this file")
@click.pass_context
def dump(ctx: click.Context, address: int, output: Path | None) -> None:
    """Read all 256 PMIC registers at ADDRESS."""
    from spdtool.core.pmic_manager import PmicManager, info_from_image

    with group_client(ctx) as client:
        mgr = PmicManager(client)
        with progress_bar(256, "Reading PMIC") as bar:
            data = mgr.read_entire(address, progress_callback=progress_reporter(bar))
        info = info_from_image(address, data)

        if output is not None:
            output.write_bytes(data)
        if ctx.obj.get("json_output"):
            echo_json({
                **info.model_dump(),
                "power_good": info.power_good,
                "file": str(output) if output else None,
                "data": None if output else data.hex(),
            })
        else:
            click.echo(
                f"PMIC 0x{address:02X}: model 0x{info.device_id:04X} (Rev: 0x{info.revision:02X})"
            )
            pg = " ".join(f"PG{n + 1}:{flag}" for n, flag in enumerate(info.power_good))
            click.echo(f"  Output status: 0x{info.output_status:02X}  {pg}")
            if output is not None:
                click.echo(f"  Saved {len(data)} bytes to {output}.")
            else:
                click.echo(data.hex())


@pmic.command("reg-read")
@click.argument("address", callback=parse_int)
@click.argument("register", callback=parse_int)
@click.pass_context
def reg_read(ctx: click.Context, address: int, register: int) -> None:
    """Read one PMIC register."""
    from spdtool.core.pmic_manager import PmicManager

    with group_client(ctx) as client:
        value = PmicManager(client).read_register(address, register)
        if ctx.obj.get("json_output"):
            echo_json({"address": address, "register": register, "value": value})
        elif value is None:
            click.echo(f"Register 0x{register:02X}: read failed")
        else:
            click.echo(f"Register 0x{register:02X}: 0x{value:02X}")
    if value is None:
        ctx.exit(1)


@pmic.command("reg-write")
@click.argument("address", callback=parse_int)
@click.argument("register", callback=parse_int)
@click.argument("value", callback=parse_int)
@click.option("--yes", is_flag=True, help="Confirm writing a PMIC register")
@click.pass_context
def reg_write(ctx: click.Context, address: int, register: int, value: int, yes: bool) -> None:
    """Write VALUE to one PMIC register."""
    from spdtool.core.pmic_manager import PmicManager

    if not yes:
        click.echo("ERROR: PMIC writes change module power rails; pass --yes to proceed.", err=True)
        ctx.exit(2)
        return

    with group_client(ctx) as client:
        ok = PmicManager(client).write_register(address, register, value)
        click.echo(
            f"Written 0x{value:02X} to register 0x{register:02X}."
            if ok else f"Write to register 0x{register:02X} failed."
        )
        if not ok:
            ctx.exit(1)
