"""CLI subcommands for whole-image SPD operations and write protection."""

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
def spd(ctx: click.Context, port: str, baud: int) -> None:
    """Read, program and verify SPD EEPROM images."""
    ctx.ensure_object(dict)
    ctx.obj["port"] = port
    ctx.obj["baud"] = baud


@spd.command("read")
@click.argument("address", callback=parse_int)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path),
              help="Write the image to this file")
@click.pass_context
def read(ctx: click.Context, address: int, output: Path | None) -> None:
    """Read the entire SPD image at ADDRESS."""
    from spdtool.core.spd_manager import SpdManager

    with group_client(ctx) as client:
        info = client.detect_module(address)
        mgr = SpdManager(client)
        with progress_bar(info.size, "Reading SPD") as bar:
            data = mgr.read_entire(address, info=info, progress_callback=progress_reporter(bar))

        if output is not None:
            output.write_bytes(data)
        if ctx.obj.get("json_output"):
            echo_json({
                "address": f"0x{address:02X}",
                "module_type": info.module_type.value,
                "size": len(data),
                "file": str(output) if output else None,
                "data": None if output else data.hex(),
            })
        elif output is not None:
            click.echo(f"Read {len(data)} bytes ({info.module_type.value}) to {output}.")
        else:
            click.echo(data.hex())


@spd.command("write")
@click.argument("address", callback=parse_int)
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--yes", is_flag=True, help="Confirm overwriting the module's SPD")
@click.pass_context
def write(ctx: click.Context, address: int, image: Path, yes: bool) -> None:
    """Program IMAGE into the SPD EEPROM at ADDRESS."""
    from spdtool.core.spd_manager import SpdManager

    if not yes:
        click.echo("ERROR: Writing overwrites the entire SPD; pass --yes to proceed.", err=True)
        ctx.exit(2)
        return

    data = image.read_bytes()
    with group_client(ctx) as client:
        info = client.detect_module(address)
        mgr = SpdManager(client)
        with progress_bar(len(data), "Writing SPD") as bar:
            report = mgr.write_entire(
                address, data, info=info, progress_callback=progress_reporter(bar)
            )

        if ctx.obj.get("json_output"):
            click.echo(report.model_dump_json(indent=2))
        else:
            click.echo(f"Wrote {report.bytes_written} bytes to 0x{address:02X}.")
            if report.fallback_chunks:
                offsets = ", ".join(f"0x{o:03X}" for o in report.fallback_chunks)
                click.echo(f"  Recovered with single-byte writes at: {offsets}")


@spd.command("verify")
@click.argument("address", callback=parse_int)
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def verify(ctx: click.Context, address: int, image: Path) -> None:
    """Compare the SPD at ADDRESS with IMAGE."""
    from spdtool.core.spd_manager import SpdManager

    expected = image.read_bytes()
    with group_client(ctx) as client:
        result = SpdManager(client).verify(address, expected)
        if ctx.obj.get("json_output"):
            click.echo(result.model_dump_json(indent=2))
        elif result.matches:
            click.echo(f"Verified {result.size} bytes at 0x{address:02X}: match.")
        else:
            shown = ", ".join(f"0x{o:03X}" for o in result.mismatched_offsets[:16])
            more = len(result.mismatched_offsets) - 16
            click.echo(f"Mismatch at {len(result.mismatched_offsets)} offset(s): {shown}"
                       + (f" (+{more} more)" if more > 0 else ""))
    if not result.matches:
        ctx.exit(1)


@spd.command("rswp")
@click.argument("address", callback=parse_int)
@click.option("--toggle", "toggle_block", type=int, default=None,
              help="Protect this block if clear, otherwise clear all blocks")
@click.option("--clear", "clear_all", is_flag=True, help="Clear protection on every block")
@click.pass_context
def rswp(ctx: click.Context, address: int, toggle_block: int | None, clear_all: bool) -> None:
    """Show or change reversible write protection at ADDRESS."""
    from spdtool.core.spd_manager import SpdManager

    quiet = ctx.obj.get("json_output")
    with group_client(ctx) as client:
        mgr = SpdManager(client)
        if clear_all:
            ok = client.clear_rswp(address)
            if not quiet:
                click.echo("Protection cleared." if ok else "Device refused to clear protection.")
        elif toggle_block is not None:
            state = mgr.toggle_rswp(address, toggle_block)
            if not quiet:
                click.echo(f"Block {toggle_block}: {'protected' if state else 'unprotected'}")

        blocks = mgr.rswp_map(address)
        if quiet:
            click.echo(blocks.model_dump_json(indent=2))
        else:
            click.echo(f"RSWP blocks at 0x{address:02X}:")
            for b in blocks.blocks:
                click.echo(f"  Block {b.block:2d}: {'protected' if b.protected else '-'}")
