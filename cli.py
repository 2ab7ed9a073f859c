# cli.py
import logging
import os
import sqlite3
import threading
import time

import click

from engine import build_services
from models import MachineStatus
from storage import Storage
from sweeper import HoldSweeper

STATUS_CHOICES = click.Choice([s.value for s in MachineStatus])


def _services(ctx):
    if "services" not in ctx.obj:
        ctx.obj["services"] = build_services(ctx.obj["storage"])
    return ctx.obj["services"]


def _format_machine(m):
    job = m.current_job_id or "-"
    hold = f" | hold_until={m.hold_expires_at}" if m.hold_expires_at else ""
    return f"{m.machine_id} | location={m.location_id} | status={m.status.value} | job={job}{hold}"


def _report(response, success_prefix):
    if response.ok:
        click.echo(f"{success_prefix} {_format_machine(response.machine)}")
        return
    if response.machine and response.machine.machine_id:
        click.echo(_format_machine(response.machine))
    raise click.ClickException(f"{response.kind.name}: {response.message}")


@click.group()
@click.option("--db", "db_path", default="machines.db", envvar="MACHINECTL_DB", show_default=True,
              help="Path to the SQLite state store")
@click.option("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
@click.pass_context
def cli(ctx, db_path, log_level):
    """machinectl - reserve and run shared machines"""
    logging.basicConfig(level=log_level.upper(), format="[%(asctime)s] %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["storage"] = Storage(db_path)
    ctx.call_on_close(ctx.obj["storage"].close)


# ---------------- Machines ----------------
@cli.group()
def machine():
    """Provision and inspect machines"""
    pass


@machine.command("add")
@click.option("--id", "machine_id", required=True, help="Machine ID")
@click.option("--location", required=True, help="Location ID")
@click.option("--status", default=MachineStatus.AVAILABLE.value, type=STATUS_CHOICES, help="Initial status")
@click.option("--job", default=None, help="Job ID (required for AWAITING_DROPOFF and RUNNING)")
@click.pass_context
def machine_add(ctx, machine_id, location, status, job):
    """Provision a new machine"""
    try:
        m = ctx.obj["storage"].add_machine(machine_id, location, status=status, current_job_id=job)
    except sqlite3.IntegrityError:
        raise click.ClickException(f"Machine {machine_id} already exists.")
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"✅ Machine added: {_format_machine(m)}")


@machine.command("list")
@click.option("--location", default=None, help="Filter by location")
@click.option("--status", default=None, type=STATUS_CHOICES, help="Filter by status")
@click.pass_context
def machine_list(ctx, location, status):
    """List machines"""
    machines = ctx.obj["storage"].list_machines(location_id=location, status=status)
    if not machines:
        click.echo("No machines found.")
        return
    for m in machines:
        click.echo(_format_machine(m))


@machine.command("show")
@click.argument("machine_id")
@click.pass_context
def machine_show(ctx, machine_id):
    """Show one machine (cache first, then store)"""
    _report(_services(ctx).reads.get_machine(machine_id), "🔎")


# ---------------- Lifecycle ----------------
@cli.command()
@click.option("--location", required=True, help="Location ID")
@click.option("--job", "job_id", required=True, help="Job ID")
@click.pass_context
def reserve(ctx, location, job_id):
    """Reserve the first available machine at a location"""
    _report(_services(ctx).reservations.reserve(location, job_id), "✅ Reserved")


@cli.command()
@click.argument("machine_id")
@click.pass_context
def start(ctx, machine_id):
    """Start the cycle of a machine awaiting drop-off"""
    _report(_services(ctx).lifecycle.start(machine_id), "🚀 Started")


@cli.command()
@click.argument("machine_id")
@click.option("--job", "job_id", default=None, help="Only release if held for this job")
@click.pass_context
def release(ctx, machine_id, job_id):
    """Cancel a reservation hold"""
    _report(_services(ctx).lifecycle.release(machine_id, job_id), "♻️ Released")


@cli.command()
@click.pass_context
def status(ctx):
    """Show machine counts per status"""
    counts = ctx.obj["storage"].status_counts()
    if not counts:
        click.echo("No machines in the system yet.")
        return
    click.echo("📊 Machine Status Summary:")
    for s in MachineStatus:
        click.echo(f"  {s.value}: {counts.get(s.value, 0)}")


# ---------------- Hold expiry ----------------
@cli.command()
@click.pass_context
def sweep(ctx):
    """Release expired holds once"""
    released = _services(ctx).lifecycle.sweep_expired_holds()
    if not released:
        click.echo("No expired holds found.")
        return
    click.echo(f"🔧 Released {len(released)} expired hold(s): {', '.join(m.machine_id for m in released)}")


@cli.command()
@click.option("--interval", default=None, type=float, help="Seconds between sweeps (uses config if set)")
@click.pass_context
def sweeper(ctx, interval):
    """Run the hold sweeper until Ctrl+C"""
    storage = ctx.obj["storage"]
    if interval is None:
        interval = float(storage.get_config("sweep_interval", default="5.0"))

    stop_event = threading.Event()
    s = HoldSweeper(_services(ctx).lifecycle, poll_interval=interval, stop_event=stop_event)
    t = threading.Thread(target=s.run, name="hold-sweeper", daemon=True)
    click.echo(f"🚀 Starting hold sweeper (interval={interval}s)")
    t.start()
    click.echo("Press Ctrl+C to stop gracefully.")

    try:
        while t.is_alive():
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping sweeper ...")
        stop_event.set()
        t.join(timeout=5.0)
        click.echo(f"✅ Sweeper stopped ({s.released_total} hold(s) released).")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration (hold_seconds, cache_size, hardware_command, ...)"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    ctx.obj["storage"].set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    row = ctx.obj["storage"].get_config_row(key)
    if not row:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={row['value']} (updated_at={row['updated_at']})")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = ctx.obj["storage"].list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- HTTP server ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
@click.pass_context
def serve(ctx, host, port):
    """Serve the machine API and dashboard"""
    import uvicorn

    os.environ["MACHINECTL_DB"] = ctx.obj["db_path"]
    click.echo(f"🌐 Serving on http://{host}:{port} (db={ctx.obj['db_path']})")
    uvicorn.run("dashboard:create_app", factory=True, host=host, port=port)


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
