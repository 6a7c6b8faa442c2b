# cli.py
import os
import time

import click

from collaborators import CommandConversionRoutine, LogNotifier, SqliteConversionRecords
from errors import QueueUnavailable, SchedulerError
from models import CONVERSION_TYPES, ConversionPayload, FAILED
from projector import StatusProjector
from reclaimer import StalledJobReclaimer
from scheduler import ConversionScheduler, open_store
from settings import load_settings
from storage import Storage
from submitter import JobSubmitter

# config keys holding the converter command per conversion type
COMMAND_KEYS = {
    "pdf-to-docx": "command_pdf_to_docx",
    "docx-to-pdf": "command_docx_to_pdf",
}


def open_storage(ctx):
    try:
        return Storage(ctx.obj["db"])
    except QueueUnavailable as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("--db", default="queue.db", show_default=True, help="Queue database path")
@click.pass_context
def cli(ctx, db):
    """convqueue - tiered conversion job queue"""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db


# ---------------- Submit ----------------
@cli.command()
@click.option("--conversion-id", required=True, help="Conversion record id")
@click.option("--user-id", required=True, help="Owner of the conversion")
@click.option("--tier", default="free", help="User tier (free, basic, premium, enterprise)")
@click.option("--source", "source_file_path", required=True, help="Source file path")
@click.option("--output", "output_file_path", required=True, help="Output file path")
@click.option("--filename", "original_filename", default=None, help="Original filename (defaults to source basename)")
@click.option("--type", "conversion_type", type=click.Choice(CONVERSION_TYPES), default="pdf-to-docx")
@click.option("--quality", type=click.Choice(["high", "standard"]), default="high")
@click.option("--preserve-formatting/--no-preserve-formatting", default=True)
@click.pass_context
def submit(ctx, conversion_id, user_id, tier, source_file_path, output_file_path, original_filename,
           conversion_type, quality, preserve_formatting):
    """Queue a conversion job"""
    db = open_storage(ctx)
    file_size = os.path.getsize(source_file_path) if os.path.exists(source_file_path) else 0
    payload = ConversionPayload(
        conversion_id=conversion_id,
        user_id=user_id,
        source_file_path=source_file_path,
        output_file_path=output_file_path,
        original_filename=original_filename or os.path.basename(source_file_path),
        conversion_type=conversion_type,
        quality=quality,
        preserve_formatting=preserve_formatting,
        file_size=file_size,
    )
    try:
        handle = JobSubmitter(db).submit(payload, tier)
    except SchedulerError as e:
        raise click.ClickException(f"Failed to submit conversion: {e}")
    finally:
        db.close()

    if handle.created:
        click.echo(f"✅ Job {handle.job_id} queued (priority={handle.priority}, "
                   f"max_attempts={handle.max_attempts}, estimated={handle.estimated_time_ms / 1000:.1f}s).")
    else:
        click.echo(f"ℹ️ Job {handle.job_id} already queued.")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--state", default=None, help="Filter jobs by state (waiting, active, completed, failed)")
@click.option("--limit", default=None, type=int, help="Show at most N jobs")
@click.pass_context
def list_jobs(ctx, state, limit):
    """List jobs in the queue"""
    db = open_storage(ctx)
    jobs = db.list_jobs(state=state, limit=limit)
    db.close()

    if not jobs:
        click.echo("No jobs found.")
        return

    for job in jobs:
        click.echo(f"{job.id} | {job.conversion_type} | tier={job.user_tier} | state={job.state} | "
                   f"attempts={job.attempts_made}/{job.max_attempts} | priority={job.priority} | "
                   f"progress={job.progress}%")


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show queue counts"""
    db = open_storage(ctx)
    stats = db.get_queue_stats()
    db.close()

    click.echo("📊 Queue Status:")
    for key in ("waiting", "delayed", "active", "completed", "failed"):
        click.echo(f"  {key}: {stats[key]}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    db = open_storage(ctx)
    job = db.get_job(job_id)
    record = SqliteConversionRecords(db).get(job.conversion_id) if job else None
    history = db.failure_history(job_id) if job else []
    db.close()
    if not job:
        click.echo(f"❌ Job {job_id} not found.")
        return

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Conversion: {job.conversion_id} ({job.conversion_type}, quality={job.quality})")
    click.echo(f"  User: {job.user_id} (tier={job.user_tier})")
    click.echo(f"  State: {job.state}")
    click.echo(f"  Attempts: {job.attempts_made}/{job.max_attempts}")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  Progress: {job.progress}% ({job.progress_stage or '-'})")
    click.echo(f"  Enqueued: {job.enqueued_at}")
    click.echo(f"  Next run: {job.next_run_at or '-'}")
    click.echo(f"  Started: {job.started_at or '-'}")
    click.echo(f"  Finished: {job.finished_at or '-'}")
    click.echo(f"  Lock: {job.lock_owner or '-'} until {job.lock_expires_at or '-'}")
    click.echo(f"  Error: {job.error or '-'}")
    if record:
        click.echo(f"  Conversion status: {record.get('status', '-')}")
    for earlier in history:
        click.echo(f"  Earlier failure: attempts={earlier['attempts_made']}/{earlier['max_attempts']} "
                   f"error={earlier['error']} (finished {earlier['finished_at']})")


@cli.command()
@click.argument("job_id")
@click.pass_context
def remove(ctx, job_id):
    """Remove a job regardless of its state"""
    db = open_storage(ctx)
    removed = db.remove_job(job_id)
    db.close()
    if removed:
        click.echo(f"🗑 Job {job_id} removed.")
    else:
        click.echo(f"❌ Job {job_id} not found.")


@cli.command()
@click.pass_context
def failed(ctx):
    """List jobs that failed for good (kept for debugging)"""
    db = open_storage(ctx)
    jobs = db.list_jobs(state=FAILED)
    db.close()
    if not jobs:
        click.echo("No failed jobs.")
        return
    for job in jobs:
        click.echo(f"{job.id} | attempts={job.attempts_made}/{job.max_attempts} | "
                   f"finished={job.finished_at} | error={job.error}")


# ---------------- Worker ----------------
@cli.command()
@click.option("--count", default=None, type=int, help="Number of workers (uses config if set)")
@click.option("--lock-seconds", default=None, type=int, help="Job lock duration (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval in seconds (uses config if set)")
@click.option("--reclaim-interval", default=None, type=float, help="Stalled-job check interval in seconds (uses config if set)")
@click.option("--pdf-to-docx", "pdf_to_docx", default=None, help="Converter command for pdf-to-docx")
@click.option("--docx-to-pdf", "docx_to_pdf", default=None, help="Converter command for docx-to-pdf")
@click.option("--timeout-seconds", default=None, type=int, help="Kill a converter running longer than this")
@click.pass_context
def worker(ctx, count, lock_seconds, poll_interval, reclaim_interval, pdf_to_docx, docx_to_pdf, timeout_seconds):
    """Run workers, the stalled-job reclaimer and the status projector"""
    db = open_storage(ctx)
    try:
        lock_renew = None if lock_seconds is None else lock_seconds / 3
        settings = load_settings(db, concurrency=count, lock_duration_seconds=lock_seconds,
                                 lock_renew_seconds=lock_renew, poll_interval=poll_interval,
                                 reclaim_interval_seconds=reclaim_interval)
    except ValueError as e:
        db.close()
        raise click.ClickException(str(e))

    templates = {"pdf-to-docx": pdf_to_docx, "docx-to-pdf": docx_to_pdf}
    routines = {}
    for conversion_type, key in COMMAND_KEYS.items():
        template = templates[conversion_type] or db.get_config(key)
        if template:
            routines[conversion_type] = CommandConversionRoutine(template, timeout_seconds=timeout_seconds)
    if not routines:
        click.echo("⚠️ No converter commands configured; every job will fail as unsupported.")
    db.close()

    storage = open_store(settings)
    scheduler = ConversionScheduler(routines, SqliteConversionRecords(storage), LogNotifier(),
                                    settings=settings, storage=storage)
    click.echo(f"🚀 Starting {settings.concurrency} worker(s) (lock={settings.lock_duration_seconds}s, "
               f"poll={settings.poll_interval}s, reclaim={settings.reclaim_interval_seconds}s)")
    scheduler.start()
    click.echo("Press Ctrl+C to stop workers gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
        scheduler.shutdown(wait=True, timeout=5.0)
        click.echo("✅ Workers stopped cleanly.")


# ---------------- Maintenance ----------------
@cli.command()
@click.pass_context
def reclaim(ctx):
    """Run one stalled-job reclaim pass"""
    db = open_storage(ctx)
    projector = StatusProjector(SqliteConversionRecords(db), LogNotifier(), clock=db.clock)
    projector.start()
    try:
        jobs = StalledJobReclaimer(db, projector).run_once()
    finally:
        projector.stop()
        db.close()
    if not jobs:
        click.echo("No expired locks found.")
        return
    for job in jobs:
        click.echo(f"🔧 {job.id} -> {job.state} (attempts={job.attempts_made}/{job.max_attempts})")


@cli.command()
@click.pass_context
def purge(ctx):
    """Apply completed-job retention"""
    db = open_storage(ctx)
    try:
        settings = load_settings(db)
    except ValueError as e:
        db.close()
        raise click.ClickException(str(e))
    db.retention_count = settings.retention_count
    db.retention_age_seconds = settings.retention_age_seconds
    removed = db.purge_completed()
    db.close()
    click.echo(f"🧹 Purged {removed} completed job(s).")


# ---------------- Dashboard ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.pass_context
def dashboard(ctx, host, port):
    """Serve the status dashboard and polling API"""
    import uvicorn

    from dashboard import create_app

    db = open_storage(ctx)
    click.echo(f"📊 Dashboard on http://{host}:{port}")
    try:
        uvicorn.run(create_app(db), host=host, port=port)
    finally:
        db.close()


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for workers and defaults"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    db = open_storage(ctx)
    db.set_config(key, value)
    db.close()
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    db = open_storage(ctx)
    value = db.get_config(key)
    db.close()
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    db = open_storage(ctx)
    rows = db.list_config()
    db.close()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
