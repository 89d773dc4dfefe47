"""Command-line interface for media-seo."""

import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import ConfigManager, Settings, apply_cli_overrides
from .errors import ConfigError, MediaSeoError
from .models import JobStatus
from .pricing import CostCalculator, ModelsDevParser, TokenEstimator
from .processing import BatchProcessor, InMemoryScheduler, ProcessingSynchronizer, QueueManager
from .prompts import PromptBuilder
from .providers import ProviderFactory, recommended_concurrency
from .quality import QualityScorer
from .reporting import cost_breakdown, cost_stats, export_jobs
from .storage import AuditLogger, ManifestSubjectStore, ParquetJobStore, PricingStore, TierCache
from .utils import ImageProcessor, InMemoryRateLimiter

__all__ = ["ConfigManager", "apply_cli_overrides", "build_pipeline", "main", "setup_logging"]

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[
            RichHandler(console=console, rich_tracebacks=True, show_path=False, show_time=False)
        ],
    )


@dataclass
class Pipeline:
    settings: Settings
    job_store: ParquetJobStore
    pricing_store: PricingStore
    subject_store: Optional[ManifestSubjectStore]
    rate_limiter: InMemoryRateLimiter
    tier_cache: TierCache
    factory: ProviderFactory
    synchronizer: ProcessingSynchronizer
    queue: QueueManager
    audit: AuditLogger


def build_pipeline(settings: Settings) -> Pipeline:
    """Wire stores, providers and processors from settings."""
    data_dir = Path(settings.storage.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)

    audit = AuditLogger(data_dir)
    job_store = ParquetJobStore(data_dir)
    pricing_store = PricingStore(data_dir, seed_file=settings.storage.pricing_file)

    subject_store = None
    if settings.storage.manifest:
        subject_store = ManifestSubjectStore(
            settings.storage.manifest,
            data_dir,
            image_processor=ImageProcessor(timeout=settings.processing.request_timeout),
        )

    scorer = QualityScorer.from_config(settings.quality)
    prompts = settings.prompts
    prompt_builder = PromptBuilder(
        variant=prompts.variant,
        ai_role=prompts.ai_role,
        site_context=prompts.site_context,
        alt_max_length=scorer.rules.alt.max_length,
        templates=prompts.templates,
    )

    rate_limiter = InMemoryRateLimiter(settings.rate_limits)
    tier_cache = TierCache(data_dir / "tiers.json")
    tier_cache.apply(rate_limiter, settings.providers)
    factory = ProviderFactory(
        settings,
        subject_store,
        prompt_builder,
        CostCalculator(pricing_store),
        token_estimator=TokenEstimator(),
    )
    scheduler = InMemoryScheduler(checkpoint_file=data_dir / "schedule.json")
    synchronizer = ProcessingSynchronizer(
        job_store,
        subject_store,
        factory,
        rate_limiter,
        scorer,
        scheduler,
        settings=settings.processing,
        audit=audit,
    )
    queue = QueueManager(synchronizer, data_dir=data_dir)
    return Pipeline(
        settings=settings,
        job_store=job_store,
        pricing_store=pricing_store,
        subject_store=subject_store,
        rate_limiter=rate_limiter,
        tier_cache=tier_cache,
        factory=factory,
        synchronizer=synchronizer,
        queue=queue,
        audit=audit,
    )


def get_pipeline(ctx, need_subjects: bool = False) -> Pipeline:
    try:
        pipeline = build_pipeline(Settings.from_dict(ctx.obj))
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)

    if need_subjects and pipeline.subject_store is None:
        console.print("[red]No subject manifest configured (storage.manifest or --manifest)[/red]")
        sys.exit(1)
    return pipeline


def resolve_subjects(pipeline: Pipeline, subject_ids, use_all: bool):
    if use_all:
        return pipeline.subject_store.list_subjects()
    if not subject_ids:
        console.print("[red]Give subject IDs or --all[/red]")
        sys.exit(1)
    return list(subject_ids)


def print_result(result):
    color = {
        JobStatus.APPROVED: "green",
        JobStatus.NEEDS_REVIEW: "yellow",
        JobStatus.PENDING: "cyan",
    }.get(result.status, "red")
    console.print(
        f"[{color}]{result.subject_id} ({result.language}): {result.status.value}[/{color}]"
    )
    if result.score is not None:
        console.print(f"  Score: {result.score:.2f}  Provider: {result.provider} ({result.model})")
    if result.metadata:
        for key, value in result.metadata.items():
            if isinstance(value, list):
                value = ", ".join(value)
            console.print(f"  [cyan]{key}:[/cyan] {value}")
    for error in result.errors:
        console.print(f"  ⚠ {error}")


@click.group()
@click.option("--config", type=click.Path(exists=True), help="Configuration file")
@click.option("--data-dir", help="Storage directory")
@click.option("--manifest", type=click.Path(exists=True), help="Subject manifest (YAML)")
@click.option("--verbose", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(ctx, config: Optional[str], data_dir: Optional[str], manifest: Optional[str], verbose: bool):
    """media-seo - AI image metadata for SEO."""
    setup_logging(verbose)

    base = ConfigManager.find_config("config", config)
    if base is None:
        if config:
            console.print(f"[red]Could not load configuration: {config}[/red]")
            sys.exit(1)
        base = {}

    storage = apply_cli_overrides(base.get("storage") or {}, data_dir=data_dir, manifest=manifest)
    ctx.obj = ConfigManager.merge_configs(base, {"storage": storage})


@main.command()
@click.argument("subject_id")
@click.option("--language", "-l", default="en", help="Language code")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def analyze(ctx, subject_id: str, language: str, as_json: bool):
    """Generate metadata for one subject."""
    pipeline = get_pipeline(ctx, need_subjects=True)
    result = pipeline.synchronizer.process_single(subject_id, language)
    pipeline.job_store.flush()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print_result(result)
    if not result.success:
        sys.exit(1)


@main.command()
@click.argument("subject_ids", nargs=-1)
@click.option("--all", "use_all", is_flag=True, help="Process every subject in the manifest")
@click.option("--language", "-l", default="en", help="Language code")
@click.option("--workers", type=int, help="Concurrent requests")
@click.option("--force", is_flag=True, help="Reprocess subjects that are already approved")
@click.pass_context
def batch(ctx, subject_ids, use_all: bool, language: str, workers: Optional[int], force: bool):
    """Process subjects now, rescheduling what the rate limit or time budget leaves."""
    pipeline = get_pipeline(ctx, need_subjects=True)
    subjects = resolve_subjects(pipeline, subject_ids, use_all)
    processor = BatchProcessor(pipeline.synchronizer)

    console.print(f"[cyan]Processing {len(subjects)} subjects ({language})...[/cyan]")
    try:
        result = processor.process_batch(subjects, language, force=force, max_workers=workers)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        pipeline.job_store.flush()
        sys.exit(130)

    table = Table(title=f"Batch {result.batch_id}")
    table.add_column("Outcome")
    table.add_column("Count", style="cyan", justify="right")
    table.add_row("Total", str(result.total))
    table.add_row("[green]Success[/green]", str(len(result.success)))
    table.add_row("[red]Failed[/red]", str(len(result.failed)))
    table.add_row("Skipped", str(len(result.skipped)))
    table.add_row("[yellow]Rescheduled[/yellow]", str(len(result.rescheduled)))
    table.add_row("Cancelled", str(len(result.cancelled)))
    console.print(table)

    if result.rate_limited:
        console.print("[yellow]Rate limit reached; remaining subjects were rescheduled. Run `media-seo work` later.[/yellow]")
    if result.budget_exhausted:
        console.print("[yellow]Time budget exhausted; remaining subjects were rescheduled.[/yellow]")
    for error in result.errors:
        console.print(f"[red]{error}[/red]")


@main.command()
@click.argument("subject_ids", nargs=-1)
@click.option("--all", "use_all", is_flag=True, help="Queue every subject in the manifest")
@click.option("--language", "-l", default="en", help="Language code")
@click.option("--force", is_flag=True, help="Queue subjects that are already approved")
@click.pass_context
def enqueue(ctx, subject_ids, use_all: bool, language: str, force: bool):
    """Schedule subjects in rate-limit sized chunks."""
    pipeline = get_pipeline(ctx, need_subjects=True)
    subjects = resolve_subjects(pipeline, subject_ids, use_all)
    queued = pipeline.queue.enqueue_batch(subjects, language, force=force)

    if not queued["total"]:
        console.print("[yellow]Nothing to queue[/yellow]")
        return
    console.print(
        f"[green]✓ Queued {queued['total']} subjects as {queued['batch_id']} "
        f"in {queued['chunks']} chunks[/green]"
    )


@main.command()
@click.option("--limit", type=int, help="Maximum jobs per pass")
@click.option("--loop", is_flag=True, help="Keep polling for due jobs")
@click.option("--interval", default=10, help="Seconds between passes with --loop")
@click.pass_context
def work(ctx, limit: Optional[int], loop: bool, interval: int):
    """Run scheduled jobs that are due."""
    pipeline = get_pipeline(ctx, need_subjects=True)

    try:
        while True:
            results = pipeline.queue.run_due(limit=limit)
            for result in results:
                print_result(result)
            if not loop:
                if not results:
                    console.print("[cyan]No jobs due[/cyan]")
                break
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping worker...[/yellow]")
        pipeline.job_store.flush()


@main.command()
@click.argument("batch_id", required=False)
@click.option("--all", "cancel_everything", is_flag=True, help="Cancel every scheduled job")
@click.pass_context
def cancel(ctx, batch_id: Optional[str], cancel_everything: bool):
    """Cancel a queued batch."""
    pipeline = get_pipeline(ctx)
    if cancel_everything:
        count = pipeline.queue.cancel_all()
    elif batch_id:
        count = pipeline.queue.cancel_batch(batch_id)
    else:
        console.print("[red]Give a batch ID or --all[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Cancelled {count} scheduled jobs[/green]")


@main.command()
@click.option("--batch", "batch_id", help="Show progress of one batch")
@click.pass_context
def status(ctx, batch_id: Optional[str]):
    """Show job and queue status."""
    pipeline = get_pipeline(ctx)

    if batch_id:
        progress = pipeline.queue.get_batch_progress(batch_id)
        if not progress["found"]:
            console.print(f"[red]Unknown batch: {batch_id}[/red]")
            sys.exit(1)
        console.print(f"[bold cyan]{batch_id}[/bold cyan] ({progress['status']})")
        console.print(f"[green]Completed:[/green] {progress['completed']}/{progress['total']}")
        console.print(f"[red]Failed:[/red] {progress['failed']}")
        console.print(f"[yellow]Pending:[/yellow] {progress['pending']}")
        console.print(f"Progress: {progress['percentage']}%")
        return

    info = pipeline.queue.get_status()
    table = Table(show_header=False)
    table.add_column("Metric")
    table.add_column("Value", style="cyan")
    for name, count in info["jobs"].items():
        table.add_row(name.replace("_", " ").title(), str(count))
    table.add_row("Scheduled", str(info["scheduled"]))
    console.print(table)


@main.command()
@click.pass_context
def costs(ctx):
    """Show spend by model."""
    pipeline = get_pipeline(ctx)
    jobs = pipeline.job_store.find()
    breakdown = cost_breakdown(jobs)

    table = Table(title="Costs by model")
    table.add_column("Model")
    table.add_column("Provider")
    table.add_column("Jobs", justify="right")
    table.add_column("Input tokens", justify="right")
    table.add_column("Output tokens", justify="right")
    table.add_column("Total (USD)", style="green", justify="right")
    for row in breakdown.to_dict("records"):
        table.add_row(
            str(row["model"]),
            str(row["provider"]),
            str(row["job_count"]),
            f"{int(row['input_tokens']):,}",
            f"{int(row['output_tokens']):,}",
            f"${row['total_cost']:.6f}",
        )
    console.print(table)

    stats = cost_stats(jobs)
    console.print(f"[green]Total:[/green] ${stats['total_cost']:.6f} over {stats['billed_jobs']} jobs")
    if stats["billed_jobs"]:
        console.print(f"[green]Average per job:[/green] ${stats['average_cost']:.6f}")
    if stats["estimated_jobs"]:
        console.print(f"[yellow]{stats['estimated_jobs']} jobs used estimated input tokens[/yellow]")


@main.command(name="rate-limits")
@click.pass_context
def rate_limits(ctx):
    """Show configured rate limits and current usage in this process."""
    pipeline = get_pipeline(ctx)

    table = Table(title="Rate limits")
    table.add_column("Provider")
    table.add_column("Per minute", justify="right")
    table.add_column("Per hour", justify="right")
    table.add_column("Remaining (minute)", style="cyan", justify="right")
    for provider, windows in pipeline.rate_limiter.status().items():
        table.add_row(
            provider,
            str(windows["minute"]["limit"]),
            str(windows["hour"]["limit"]),
            str(windows["minute"]["remaining"]),
        )
    console.print(table)


@main.group()
def pricing():
    """Manage model pricing."""


@pricing.command(name="sync")
@click.option("--url", help="Catalogue URL (defaults to models.dev)")
@click.pass_context
def pricing_sync(ctx, url: Optional[str]):
    """Fetch vision model pricing from models.dev."""
    pipeline = get_pipeline(ctx)
    parser = ModelsDevParser(api_url=url) if url else ModelsDevParser()

    console.print("[cyan]Fetching pricing from models.dev...[/cyan]")
    entries = parser.fetch_pricing_data()
    if not entries:
        console.print("[red]No pricing data fetched[/red]")
        sys.exit(1)
    count = pipeline.pricing_store.upsert(entries.values())
    console.print(f"[green]✓ Stored pricing for {count} models[/green]")


@pricing.command(name="list")
@click.option("--provider", help="Only show one provider")
@click.pass_context
def pricing_list(ctx, provider: Optional[str]):
    """List stored pricing."""
    pipeline = get_pipeline(ctx)

    table = Table(title="Pricing (USD per million tokens)")
    table.add_column("Model")
    table.add_column("Provider")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Source", style="dim")
    for entry in sorted(pipeline.pricing_store.all(), key=lambda p: (p.provider, p.model_name)):
        if provider and entry.provider != provider:
            continue
        table.add_row(
            entry.model_name,
            entry.provider,
            f"{entry.input_price_per_million:.2f}",
            f"{entry.output_price_per_million:.2f}",
            entry.source,
        )
    console.print(table)


@main.group()
def providers():
    """Inspect and test providers."""


@providers.command(name="list")
@click.pass_context
def providers_list(ctx):
    """List providers and their configuration state."""
    pipeline = get_pipeline(ctx)

    table = Table()
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Enabled")
    table.add_column("API key")
    table.add_column("Primary")
    for row in pipeline.factory.configured_providers():
        table.add_row(
            row["display_name"],
            row["model"],
            "✓" if row["enabled"] else "",
            "[green]✓[/green]" if row["has_key"] else "[red]missing[/red]",
            "★" if row["primary"] else "",
        )
    console.print(table)


@providers.command(name="test")
@click.argument("name")
@click.pass_context
def providers_test(ctx, name: str):
    """Check credentials and detect the account's rate limit tier."""
    pipeline = get_pipeline(ctx)
    try:
        ok = pipeline.factory.test_provider(name)
    except (ConfigError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if not ok:
        console.print(f"[red]{name} connection failed[/red]")
        sys.exit(1)
    console.print(f"[green]✓ {name} connection OK[/green]")

    info = pipeline.factory.detect_tier(name)
    if not info.detected:
        limit = pipeline.rate_limiter.get_limit(name)
        console.print(f"[yellow]No rate limit reported, keeping {limit} requests/minute[/yellow]")
        return

    pipeline.tier_cache.put(info, pipeline.settings.providers[name].api_key)
    workers = recommended_concurrency(info.rpm)
    console.print(f"Tier: [cyan]{info.tier_name}[/cyan] ({info.rpm} requests/minute)")
    console.print(f"Suggested workers: {workers['optimal']} (at most {workers['extreme']})")
    if name in pipeline.settings.rate_limits.get("providers", {}) or "minute" in pipeline.settings.rate_limits:
        console.print("[yellow]Configured rate_limits take precedence over the detected limit[/yellow]")


@main.command()
@click.argument("job_id")
@click.pass_context
def approve(ctx, job_id: str):
    """Apply a draft that is waiting for review."""
    pipeline = get_pipeline(ctx, need_subjects=True)
    try:
        job = pipeline.synchronizer.approve(job_id)
    except (KeyError, MediaSeoError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    pipeline.job_store.flush()
    console.print(f"[green]✓ Approved {job.subject_id} ({job.language_code})[/green]")


@main.command()
@click.argument("job_id")
@click.option("--reason", default="", help="Why the draft was rejected")
@click.pass_context
def reject(ctx, job_id: str, reason: str):
    """Discard a draft that is waiting for review."""
    pipeline = get_pipeline(ctx)
    try:
        job = pipeline.synchronizer.reject(job_id, reason)
    except (KeyError, MediaSeoError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    pipeline.job_store.flush()
    console.print(f"[yellow]Rejected {job.subject_id} ({job.language_code})[/yellow]")


@main.command()
@click.argument("subject_id")
@click.option("--limit", default=20, help="Number of events")
@click.pass_context
def history(ctx, subject_id: str, limit: int):
    """Show the audit trail of one subject."""
    pipeline = get_pipeline(ctx)
    events = pipeline.audit.trail(subject_id, limit=limit)
    if not events:
        console.print(f"[yellow]No events for {subject_id}[/yellow]")
        return
    for event in events:
        extra = {k: v for k, v in event.items() if k not in ("timestamp", "event", "subject_id")}
        console.print(f"[dim]{event['timestamp']}[/dim] [cyan]{event['event']}[/cyan] {extra}")


@main.command()
@click.argument("output", type=click.Path())
@click.option("--format", "fmt", type=click.Choice(["csv", "jsonl"]), default="csv")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in JobStatus]),
    help="Only export jobs in this status",
)
@click.pass_context
def export(ctx, output: str, fmt: str, status_filter: Optional[str]):
    """Export job records."""
    pipeline = get_pipeline(ctx)
    statuses = [JobStatus(status_filter)] if status_filter else None
    count = export_jobs(pipeline.job_store.find(statuses=statuses), output, fmt)
    console.print(f"[green]✓ Exported {count} jobs to {output}[/green]")


if __name__ == "__main__":
    main()
