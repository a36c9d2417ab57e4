import asyncio
import click
import json
import logging
from datetime import timedelta
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from ..models.config import load_config, save_config
from ..models.errors import AutopilotError
from ..models.job import JobStatus, ScheduledJob
from ..storage.database import Storage
from ..workers.executor import FacebookPublisher
from ..workers.processor import JobProcessor
from ..workers.retry import connect_database_with_retry
from ..workers.scheduler import Scheduler

console = Console()


def configure_logging(level: str):
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


def run_with_storage(fn):
    """Open storage from the current config, run `fn(storage, config)`, close"""
    config = load_config()

    async def _main():
        storage = Storage(config.db_path)
        try:
            await storage.init()
            return await fn(storage, config)
        finally:
            await storage.close()

    return asyncio.run(_main())


def _truncate(text, width=50):
    if not text:
        return ""
    return text[:width] + "..." if len(text) > width else text


@click.group()
@click.option('--log-level', default='INFO', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
def cli(log_level):
    """Autopilot - scheduled Facebook post publishing with retries"""
    configure_logging(log_level)

@cli.command()
@click.argument('job_json')
def enqueue(job_json):
    """Add a new scheduled post"""
    try:
        job_data = json.loads(job_json)
        if not isinstance(job_data, dict):
            raise ValueError("Job data must be a JSON object")

        job = ScheduledJob(**job_data)
        if job.status != JobStatus.PENDING:
            raise ValueError("New jobs must start in pending status")

        async def _add(storage, config):
            return await storage.add_job(job)

        run_with_storage(_add)
        console.print(f"[green]Job {job.id} scheduled for {job.scheduled_for.isoformat()}[/green]")

    except Exception as e:
        console.print(f"[red]Error enqueueing job: {str(e)}[/red]")
        raise SystemExit(1)

@cli.group()
def scheduler():
    """Run the scheduled posts loop"""
    pass

async def _build_scheduler(storage, config):
    publisher = FacebookPublisher(
        storage,
        config.page_tokens,
        graph_api_url=config.graph_api_url,
        timeout=config.request_timeout_seconds,
    )
    processor = JobProcessor(storage, publisher, config)
    return Scheduler(storage, processor, config), publisher

@scheduler.command('start')
def scheduler_start():
    """Poll for due posts until interrupted"""
    async def _main(config):
        storage = Storage(config.db_path)
        await connect_database_with_retry(storage)
        loop_, publisher = await _build_scheduler(storage, config)
        loop_.install_signal_handlers()
        try:
            await loop_.run()
        finally:
            await publisher.close()
            await storage.close()

    try:
        config = load_config()
        console.print(f"[cyan]Scheduler running every {config.cadence_seconds:g}s. Press Ctrl+C to stop...[/cyan]")
        asyncio.run(_main(config))
        console.print("[yellow]Scheduler stopped.[/yellow]")
    except AutopilotError as e:
        console.print(f"[red]Error starting scheduler: {str(e)}[/red]")
        raise SystemExit(1)

@scheduler.command('tick')
def scheduler_tick():
    """Process a single batch of due posts and exit"""
    async def _tick(storage, config):
        loop_, publisher = await _build_scheduler(storage, config)
        try:
            return await loop_.tick()
        finally:
            await publisher.close()

    try:
        summary = run_with_storage(_tick)
        table = Table(title="Batch Summary")
        table.add_column("Outcome", style="cyan")
        table.add_column("Count", style="magenta")
        for name in ("fetched", "published", "retrying", "failed", "errors"):
            table.add_row(name, str(getattr(summary, name)))
        console.print(table)
    except Exception as e:
        console.print(f"[red]Error running batch: {str(e)}[/red]")
        raise SystemExit(1)

@cli.command()
def status():
    """Show summary of all job states"""
    async def _counts(storage, config):
        return await storage.count_by_status()

    try:
        counts = run_with_storage(_counts)
        table = Table(title="Queue Status")
        table.add_column("Status", style="cyan")
        table.add_column("Count", style="magenta")

        for state in JobStatus:
            table.add_row(state.value, str(counts.get(state, 0)))

        console.print(table)

    except Exception as e:
        console.print(f"[red]Error getting status: {str(e)}[/red]")
        raise SystemExit(1)

@cli.command('list')
@click.option('--status', 'status_', type=click.Choice([s.value for s in JobStatus]),
              help='Filter jobs by status')
def list_jobs(status_):
    """List scheduled posts"""
    async def _list(storage, config):
        return await storage.list_jobs(status=JobStatus(status_) if status_ else None)

    try:
        jobs = run_with_storage(_list)

        if not jobs:
            console.print("[yellow]No jobs found[/yellow]")
            return

        table = Table(title=f"Jobs {f'in {status_} status' if status_ else ''}")
        table.add_column("ID", style="cyan")
        table.add_column("Page", style="magenta")
        table.add_column("Status", style="green")
        table.add_column("Retries", style="yellow")
        table.add_column("Scheduled For", style="blue")
        table.add_column("Content")

        for job in jobs:
            table.add_row(
                job.id,
                job.page_id,
                job.status.value,
                str(job.retry_count),
                job.scheduled_for.strftime("%Y-%m-%d %H:%M:%S"),
                _truncate(job.content),
            )

        console.print(table)

    except Exception as e:
        console.print(f"[red]Error listing jobs: {str(e)}[/red]")
        raise SystemExit(1)

@cli.group()
def failed():
    """Inspect and requeue permanently failed posts"""
    pass

@failed.command('list')
def failed_list():
    """List posts that exhausted their retries"""
    async def _failed(storage, config):
        jobs = await storage.list_jobs(status=JobStatus.FAILED)
        return [job for job in jobs if job.retry_count >= config.max_retries]

    try:
        dead_jobs = run_with_storage(_failed)

        if not dead_jobs:
            console.print("[yellow]No permanently failed jobs[/yellow]")
            return

        table = Table(title="Failed Posts")
        table.add_column("ID", style="cyan")
        table.add_column("Page", style="magenta")
        table.add_column("Retries", style="yellow")
        table.add_column("Error", style="red")

        for job in dead_jobs:
            table.add_row(job.id, job.page_id, str(job.retry_count), _truncate(job.error_message))

        console.print(table)

    except Exception as e:
        console.print(f"[red]Error listing failed jobs: {str(e)}[/red]")
        raise SystemExit(1)

@failed.command('retry')
@click.argument('job_id')
def failed_retry(job_id):
    """Move a failed post back to pending with a fresh retry budget"""
    async def _requeue(storage, config):
        return await storage.requeue_failed(job_id)

    try:
        job = run_with_storage(_requeue)
        if job is None:
            console.print(f"[red]Job {job_id} not found or not failed[/red]")
            raise SystemExit(1)
        console.print(f"[green]Job {job_id} moved back to pending queue[/green]")

    except AutopilotError as e:
        console.print(f"[red]Error retrying job: {str(e)}[/red]")
        raise SystemExit(1)

@cli.command()
@click.option('--older-than-minutes', default=30, show_default=True, type=click.IntRange(min=1),
              help='Only reset jobs stuck in processing for at least this long')
def recover(older_than_minutes):
    """Return jobs stuck in processing (e.g. after a crash) to pending"""
    async def _reset(storage, config):
        return await storage.reset_stale_jobs(timedelta(minutes=older_than_minutes))

    try:
        count = run_with_storage(_reset)
        console.print(f"[green]Reset {count} stale job(s) to pending[/green]")
    except AutopilotError as e:
        console.print(f"[red]Error recovering jobs: {str(e)}[/red]")
        raise SystemExit(1)

@cli.group()
def config():
    """Manage configuration"""
    pass

@config.command('get')
@click.argument('key')
def config_get(key):
    """Get a configuration value"""
    try:
        value = load_config().get(key)
        console.print(f"{key}: {json.dumps(value)}")
    except AutopilotError as e:
        console.print(f"[red]Error getting configuration: {str(e)}[/red]")
        raise SystemExit(1)

@config.command('set')
@click.argument('key')
@click.argument('value')
def config_set(key, value):
    """Set a configuration value"""
    try:
        # Numbers and JSON objects (page-tokens) arrive as text
        try:
            value = json.loads(value)
        except ValueError:
            pass

        updated = load_config().with_value(key, value)
        save_config(updated)
        console.print(f"[green]Set {key} to {json.dumps(updated.get(key))}[/green]")
    except AutopilotError as e:
        console.print(f"[red]Error setting configuration: {str(e)}[/red]")
        raise SystemExit(1)

def main():
    cli()

if __name__ == '__main__':
    main()
