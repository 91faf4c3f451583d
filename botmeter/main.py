"""Main CLI entry point for botmeter."""

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .aggregators import aggregate_entries, aggregate_entries_async
from .analyzer import AnalyzeOptions, AnalyzeRequest, Analyzer, DataRef
from .anomaly_detection import AnomalyDetector
from .bots import UAClassifier
from .cache import ClassificationCache, get_classification_cache
from .config import SHERLOCK_SETTINGS, STORAGE_SETTINGS
from .exceptions import BotmeterError
from .export import DataExporter
from .llm import BulkLLMClassifier, ChatCompletionsBackend, ExaWebSearch
from .log_reader import aiter_log_files, iter_log_files, write_normalized_file
from .models import AggregationResult, AnalysisReport, Resolution, ensure_datetime, iso_or_none, resolution_of
from .parser import LogParser
from .pricing import CostInput, PricingOptions, compute_bandwidth_costs, load_price_table
from .sherlock import Sherlock
from .storage import EntryStore, ReportStore, report_summary
from .utils import confidence_color, format_bytes, format_cost, format_number, format_percentage, truncate

console = Console()

DATETIME_FORMATS = [
    '%Y-%m-%d %H:%M:%S',    # 2025-01-01 10:30:00
    '%Y-%m-%d %H:%M',       # 2025-01-01 10:30
    '%Y-%m-%d',             # 2025-01-01
    '%Y/%m/%d %H:%M:%S',    # 2025/01/01 10:30:00
    '%Y/%m/%d',             # 2025/01/01
]


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def parse_datetime_string(date_str: str) -> Optional[datetime]:
    """Parse an ISO-8601 or common date string as UTC."""
    parsed = ensure_datetime(date_str)
    if parsed is not None:
        return parsed
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(date_str, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def require_datetime(date_str: str, option: str) -> str:
    parsed = parse_datetime_string(date_str)
    if parsed is None:
        console.print(f"[red]Unable to parse {option}: {date_str}[/red]")
        console.print("[yellow]Supported formats: ISO-8601, YYYY-MM-DD, YYYY-MM-DD HH:MM:SS[/yellow]")
        sys.exit(2)
    return iso_or_none(parsed)


def fail(error: BotmeterError):
    console.print(f"[red]{error.error_code}: {error}[/red]")
    sys.exit(1)


def read_entries(log_files: List[str]) -> list:
    """Parse log files into entries with a progress spinner."""
    parser = LogParser()
    entries = []
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Reading logs...", total=None)
        for entry in iter_log_files(log_files, parser=parser):
            entries.append(entry)
            if len(entries) % 1000 == 0:
                progress.update(task, description=f"Reading logs... ({len(entries):,} entries)")

    console.print(f"[green]Loaded {len(entries):,} entries[/green]"
                  + (f" [dim]({parser.skipped:,} lines skipped)[/dim]" if parser.skipped else ""))
    return entries


def pricing_options(region, netlify_plan, vercel_included_gb, argo) -> PricingOptions:
    return PricingOptions(region=region, netlify_plan=netlify_plan,
                          vercel_included_gb=vercel_included_gb or 0, use_cloudflare_argo=argo)


def pricing_decorators(func):
    """Shared provider pricing options."""
    func = click.option('--argo', is_flag=True, help='Cloudflare: bill Argo Smart Routing per GB')(func)
    func = click.option('--vercel-included-gb', type=float, default=0,
                        help='Vercel: included GB before overage')(func)
    func = click.option('--netlify-plan', type=click.Choice(['personal', 'pro', 'legacy']), default='legacy',
                        help='Netlify plan')(func)
    func = click.option('--region', help='CloudFront pricing region (e.g. us_canada_mexico, europe)')(func)
    func = click.option('--price-table', type=click.Path(exists=True), help='Price table JSON')(func)
    return func


def display_classifications(classifications: dict, title: str, limit: int = 50):
    table = Table(title=title)
    table.add_column("User Agent", style="cyan", max_width=60)
    table.add_column("Bot", justify="center")
    table.add_column("Type")
    table.add_column("Name")
    table.add_column("Confidence", justify="right")
    table.add_column("Source", style="dim")

    for ua, verdict in list(classifications.items())[:limit]:
        color = confidence_color(verdict.confidence)
        table.add_row(
            truncate(ua or '(empty)', 60),
            "[red]yes[/red]" if verdict.is_bot else "[green]no[/green]",
            verdict.bot_type or "-",
            verdict.bot_name or "-",
            f"[{color}]{verdict.confidence:.2f}[/{color}]",
            verdict.source.value,
        )
    console.print(table)
    if len(classifications) > limit:
        console.print(f"[dim]... {len(classifications) - limit:,} more[/dim]")


def display_anomalies(anomalies: list, limit: int = 30):
    if not anomalies:
        console.print("[green]No anomalies detected[/green]")
        return
    table = Table(title=f"Anomalies ({len(anomalies)})")
    table.add_column("Type", style="bold red")
    table.add_column("IP", style="cyan")
    table.add_column("Evidence")
    for anomaly in anomalies[:limit]:
        data = anomaly if isinstance(anomaly, dict) else anomaly.to_dict()
        evidence = ', '.join(f"{k}={v}" for k, v in data.items() if k not in ('type', 'ip', 'samples'))
        table.add_row(data['type'], data['ip'], evidence)
    console.print(table)


def display_cost(cost: dict, title: str):
    currency = cost.get('currency', 'USD')
    table = Table(title=title)
    table.add_column("Category", style="cyan")
    table.add_column("Bytes", justify="right")
    table.add_column("Monthly Bytes", justify="right")
    table.add_column("Monthly Cost", justify="right", style="yellow")
    for item in cost.get('breakdown', []):
        table.add_row(item['category'], format_bytes(item['bytes']), format_bytes(item['monthly_bytes']),
                      format_cost(item['monthly_cost'], currency))
    table.add_row("[bold]Total[/bold]", "", "", f"[bold]{format_cost(cost.get('total_cost', 0), currency)}[/bold]")
    console.print(table)
    for note in cost.get('notes', []):
        console.print(f"  [dim]• {note}[/dim]")


def display_report(report: AnalysisReport):
    metrics = report.metrics or {}
    summary = report.classifications or {}

    console.print(f"\n[bold blue]📊 BOT TRAFFIC REPORT[/bold blue] [dim]{report.report_id}[/dim]")
    console.print(f"  Site: [cyan]{report.site_id}[/cyan]  Provider: [cyan]{report.provider}[/cyan]")
    console.print(f"  Window: [green]{report.window_start}[/green] → [green]{report.window_end}[/green] "
                  f"([yellow]{report.window_days} days[/yellow])")
    console.print(f"  Requests: [green]{format_number(metrics.get('total_requests', 0))}[/green]  "
                  f"Bytes: [green]{format_bytes(metrics.get('total_bytes', 0))}[/green]")

    console.print(f"\n[bold green]🤖 CLASSIFICATION[/bold green]")
    sample_size = summary.get('sample_size', 0)
    console.print(f"  User agents: {format_number(sample_size)}  "
                  f"Bots: [red]{summary.get('bots', 0)}[/red] ({format_percentage(summary.get('bots', 0), sample_size)})  "
                  f"Humans: [green]{summary.get('humans', 0)}[/green]  Unknown: [yellow]{summary.get('unknown', 0)}[/yellow]")

    audience = (metrics.get('bytes') or {}).get('audience')
    if audience:
        total = sum(audience.values())
        console.print(f"  Bot bytes: [red]{format_bytes(audience.get('bot', 0))}[/red] "
                      f"({format_percentage(audience.get('bot', 0), total)})")

    if metrics.get('cost'):
        console.print()
        display_cost(metrics['cost'], "Monthly Bandwidth Cost")

    console.print()
    display_anomalies(report.anomalies, limit=15)

    if report.notes:
        console.print(f"\n[bold yellow]⚠️  NOTES[/bold yellow]")
        for note in report.notes:
            console.print(f"  • {note}")


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.option('--db', 'db_path', type=click.Path(), help=f"SQLite database (default: {STORAGE_SETTINGS['db_path']})")
@click.pass_context
def cli(ctx, verbose, db_path):
    """🤖 botmeter - What do bots cost your bandwidth bill?

    Classifies the user agents in web access logs as bots or humans, flags
    anomalous per-IP traffic and prices bot bandwidth against your CDN or
    hosting provider.

    \b
    Quick Start:
      botmeter aggregate access.log -o aggregates.json
      botmeter classify access.log
      botmeter anomalies access.log
      botmeter cost --provider vercel --bytes bot=120000000000 --window-days 30
      botmeter analyze --site-id shop --provider cloudflare --logs access.json \\
          --start 2025-09-01 --end 2025-09-08
      botmeter report --site-id shop
    """
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj['db_path'] = db_path


@cli.command()
@click.argument('log_files', nargs=-1, required=True, type=click.Path(exists=True))
@click.option('--output', '-o', type=click.Path(), help='Write a normalized {metadata, entries} JSON file')
@click.option('--site-id', help='Store the entries for this site in the database')
@click.option('--org-id', help='Organization owning the site')
@click.option('--provider', default='unknown', help='Provider recorded in the normalized file metadata')
@click.pass_context
def ingest(ctx, log_files, output, site_id, org_id, provider):
    """📥 Parse raw access logs into normalized entries.

    Accepts combined/common log lines, nginx JSON logs, JSONL and gzip files.
    """
    if not output and not site_id:
        console.print("[red]Nothing to do: give --output and/or --site-id[/red]")
        sys.exit(2)

    entries = read_entries(list(log_files))
    if output:
        metadata = write_normalized_file(output, entries, provider=provider)
        console.print(f"[green]Normalized file written to: {output}[/green] "
                      f"[dim]({metadata['totalEntries']:,} entries)[/dim]")
    if site_id:
        try:
            with EntryStore(ctx.obj['db_path']) as store:
                inserted = store.insert_entries(site_id, entries, org_id=org_id)
        except BotmeterError as e:
            fail(e)
        console.print(f"[green]Stored {inserted:,} entries for {site_id}[/green]")


@cli.command()
@click.argument('log_files', nargs=-1, required=True, type=click.Path(exists=True))
@click.option('--output', '-o', type=click.Path(), help='Write the aggregates JSON artifact')
@click.option('--stream', is_flag=True, help='Aggregate through the async streaming reader')
def aggregate(log_files, output, stream):
    """📈 Aggregate logs by IP/minute, status class and path group."""
    try:
        if stream:
            result = asyncio.run(aggregate_entries_async(aiter_log_files(list(log_files))))
        else:
            result = aggregate_entries(read_entries(list(log_files)))
    except BotmeterError as e:
        fail(e)

    totals = result.totals
    console.print(f"[bold blue]📊 AGGREGATION SUMMARY[/bold blue]")
    console.print(f"  Requests: [green]{format_number(totals.total_requests)}[/green]  "
                  f"Bytes: [green]{format_bytes(totals.total_bytes)}[/green]")
    console.print(f"  Unique user agents: [cyan]{len(result.unique_user_agents):,}[/cyan]  "
                  f"IPs: [cyan]{len(result.by_ip_minute):,}[/cyan]")
    if totals.start_time:
        console.print(f"  From [green]{iso_or_none(totals.start_time)}[/green] "
                      f"to [green]{iso_or_none(totals.end_time)}[/green]")

    table = Table(title="By status class")
    table.add_column("Class")
    table.add_column("Requests", justify="right")
    table.add_column("Bytes", justify="right")
    for key, counter in sorted(result.by_status.items()):
        table.add_row(key, format_number(counter.count), format_bytes(counter.bytes))
    for key, counter in result.by_path_group.items():
        table.add_row(f"[dim]{key}[/dim]", format_number(counter.count), format_bytes(counter.bytes))
    console.print(table)

    if output:
        with open(output, 'w', encoding='utf-8') as f:
            json.dump(result.to_dict(), f, indent=2)
        console.print(f"[green]Aggregates written to: {output}[/green]")


@cli.command()
@click.argument('log_files', nargs=-1, type=click.Path(exists=True))
@click.option('--ua', 'user_agents', multiple=True, help='Classify this user agent (repeatable)')
@click.option('--no-cache', is_flag=True, help='Do not read or write the classification cache')
@click.option('--bulk', is_flag=True, help='Send unresolved user agents to the LLM bulk classifier')
@click.option('--signatures', type=click.Path(exists=True), help='Signature JSON file')
@click.option('--unknown-only', is_flag=True, help='Show only verdicts that would go to Sherlock')
@click.option('--output', '-o', type=click.Path(), help='Write verdicts as JSON')
@click.pass_context
def classify(ctx, log_files, user_agents, no_cache, bulk, signatures, unknown_only, output):
    """🕵️ Classify user agents as bot or human."""
    candidates = list(user_agents)
    if log_files:
        candidates.extend(aggregate_entries(read_entries(list(log_files))).unique_user_agents)
    if not candidates:
        console.print("[red]Give log files or --ua[/red]")
        sys.exit(2)

    bulk_classifier = None
    if bulk:
        backend = ChatCompletionsBackend()
        if backend.is_configured():
            bulk_classifier = BulkLLMClassifier(backend)
        else:
            console.print("[yellow]OPENAI_API_KEY not set, bulk classification disabled[/yellow]")

    with get_classification_cache(ctx.obj['db_path'], enabled=not no_cache) as cache:
        classifier = UAClassifier(cache=cache, signatures_path=signatures,
                                  bulk_classifier=bulk_classifier, use_bulk=bulk_classifier is not None)
        run = classifier.classify(candidates)

    verdicts = run.classifications
    if unknown_only:
        threshold = SHERLOCK_SETTINGS['defer_threshold']
        verdicts = {ua: v for ua, v in verdicts.items() if resolution_of(v, threshold) != Resolution.RESOLVED}

    counts = run.counts()
    display_classifications(verdicts, f"Classifications ({counts['bots']} bots / {counts['humans']} humans)")
    for note in run.notes:
        console.print(f"[yellow]• {note}[/yellow]")

    if output:
        with open(output, 'w', encoding='utf-8') as f:
            json.dump({ua: v.to_dict() for ua, v in verdicts.items()}, f, indent=2)
        console.print(f"[green]Verdicts written to: {output}[/green]")


@cli.command()
@click.argument('log_files', nargs=-1, type=click.Path(exists=True))
@click.option('--aggregates', type=click.Path(exists=True), help='Use a precomputed aggregates JSON file')
@click.option('--ignore-ip', multiple=True, help='Skip this IP (repeatable)')
@click.option('--z-score', type=float, help='Override the z-score threshold')
@click.option('--burst-multiplier', type=float, help='Override the burst ratio threshold')
@click.option('--output', '-o', type=click.Path(), help='Write anomalies as JSON')
def anomalies(log_files, aggregates, ignore_ip, z_score, burst_multiplier, output):
    """🚨 Detect per-IP traffic anomalies (spikes, bursts, scraping, error rates)."""
    try:
        if aggregates:
            with open(aggregates, 'r', encoding='utf-8') as f:
                result = AggregationResult.from_dict(json.load(f))
        elif log_files:
            result = aggregate_entries(read_entries(list(log_files)))
        else:
            console.print("[red]Give log files or --aggregates[/red]")
            sys.exit(2)
        detector = AnomalyDetector(ignore_ips=ignore_ip, z_score_threshold=z_score,
                                   burst_multiplier=burst_multiplier)
        report = detector.detect(result.by_ip_minute, result.by_ip_status)
    except BotmeterError as e:
        fail(e)
    except (OSError, ValueError) as e:
        console.print(f"[red]Could not read aggregates: {e}[/red]")
        sys.exit(1)

    console.print(f"[blue]{report.ips_analyzed:,} IPs analyzed[/blue]")
    display_anomalies(report.anomalies)
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            json.dump(report.to_dict(), f, indent=2)
        console.print(f"[green]Anomalies written to: {output}[/green]")


@cli.command()
@click.option('--provider', required=True, help='vercel, aws_cloudfront, netlify, cloudflare, ...')
@click.option('--bytes', 'byte_items', multiple=True, help='category=bytes (repeatable)')
@click.option('--aggregates', type=click.Path(exists=True), help='Price the path groups of an aggregates file')
@click.option('--window-days', type=float, help='Days the byte counts cover (default: as monthly)')
@pricing_decorators
def cost(provider, byte_items, aggregates, window_days, price_table, region, netlify_plan,
         vercel_included_gb, argo):
    """💰 Price a byte breakdown against the provider price table."""
    breakdown = []
    for item in byte_items:
        category, sep, value = item.partition('=')
        if not sep:
            console.print(f"[red]Expected category=bytes, got: {item}[/red]")
            sys.exit(2)
        try:
            breakdown.append((category, int(value)))
        except ValueError:
            console.print(f"[red]Not a byte count: {value}[/red]")
            sys.exit(2)
    if aggregates:
        with open(aggregates, 'r', encoding='utf-8') as f:
            result = AggregationResult.from_dict(json.load(f))
        breakdown.extend((group, counter.bytes) for group, counter in result.by_path_group.items())
    if not breakdown:
        console.print("[red]Give --bytes or --aggregates[/red]")
        sys.exit(2)

    try:
        table = load_price_table(price_table)
        result = compute_bandwidth_costs(
            CostInput(provider=provider, breakdown=breakdown, window_days=window_days,
                      options=pricing_options(region, netlify_plan, vercel_included_gb, argo)),
            table,
        )
    except BotmeterError as e:
        fail(e)
    display_cost(result.to_dict(), f"{provider} monthly cost (price table {table.get('version', 'unknown')})")


@cli.command()
@click.argument('log_files', nargs=-1, required=True, type=click.Path(exists=True))
@click.option('--ua', 'user_agents', multiple=True, help='Disambiguate these user agents instead of the deferred ones')
@click.option('--web-search', is_flag=True, help='Allow Stage 2 web search (needs EXA_API_KEY)')
@click.option('--max-web', type=int, default=SHERLOCK_SETTINGS['max_web_candidates'], help='Stage 2 candidate cap')
@click.option('--no-cache', is_flag=True, help='Do not read or write the classification cache')
@click.pass_context
def sherlock(ctx, log_files, user_agents, web_search, max_web, no_cache):
    """🔎 Resolve unknown user agents from behavioral evidence with an LLM."""
    tools = [ExaWebSearch()] if web_search else []
    backend = ChatCompletionsBackend(tools=[t for t in tools if t.is_configured()])
    if not backend.is_configured():
        console.print("[red]OPENAI_API_KEY is not configured[/red]")
        sys.exit(1)

    entries = read_entries(list(log_files))
    with get_classification_cache(ctx.obj['db_path'], enabled=not no_cache) as cache:
        targets = list(user_agents)
        if not targets:
            run = UAClassifier(cache=cache).classify(aggregate_entries(entries).unique_user_agents)
            threshold = SHERLOCK_SETTINGS['defer_threshold']
            targets = [ua for ua, v in run.classifications.items()
                       if ua and resolution_of(v, threshold) != Resolution.RESOLVED]
        if not targets:
            console.print("[green]Every user agent is already resolved[/green]")
            return

        console.print(f"[blue]Sherlock investigating {len(targets):,} user agents...[/blue]")
        result = Sherlock(backend, cache=cache, use_web_search=web_search, max_web=max_web).run(targets, entries)

    display_classifications(result.verdicts, f"Sherlock verdicts ({len(result.verdicts)}/{len(targets)})")
    if result.unresolved:
        console.print(f"[yellow]{len(result.unresolved)} user agents left unresolved[/yellow]")
    if result.deferred:
        console.print(f"[yellow]{len(result.deferred)} verdicts are provisional, web evidence was not gathered[/yellow]")
    for note in result.notes:
        console.print(f"[yellow]• {note}[/yellow]")


@cli.command()
@click.option('--site-id', required=True, help='Site identifier')
@click.option('--provider', required=True, help='Hosting/CDN provider key')
@click.option('--start', 'window_start', required=True, help='Window start (ISO-8601 or YYYY-MM-DD)')
@click.option('--end', 'window_end', required=True, help='Window end (ISO-8601 or YYYY-MM-DD)')
@click.option('--org-id', help='Organization owning the site')
@click.option('--aggregates', type=click.Path(), help='Precomputed aggregates JSON')
@click.option('--from-db', is_flag=True, help='Query stored entries for the window')
@click.option('--logs', type=click.Path(), help='Normalized (or raw) log file')
@click.option('--window-days', type=float, help='Billing window length override')
@click.option('--no-sherlock', is_flag=True, help='Skip LLM disambiguation')
@click.option('--web-search', is_flag=True, help='Allow Sherlock Stage 2 web search')
@click.option('--bulk', is_flag=True, help='Enable the LLM bulk classifier tier')
@click.option('--no-cache', is_flag=True, help='Do not use the classification cache')
@click.option('--no-store', is_flag=True, help='Do not persist the report')
@click.option('--output', '-o', help='Output directory for exports')
@click.option('--export-json', is_flag=True, help='Export the report to JSON')
@click.option('--export-csv', is_flag=True, help='Export costs and anomalies to CSV')
@click.option('--export-charts', is_flag=True, help='Export charts to HTML')
@pricing_decorators
@click.pass_context
def analyze(ctx, site_id, provider, window_start, window_end, org_id, aggregates, from_db, logs,
            window_days, no_sherlock, web_search, bulk, no_cache, no_store, output, export_json,
            export_csv, export_charts, price_table, region, netlify_plan, vercel_included_gb, argo):
    """🚀 Full analysis: classify, disambiguate, detect anomalies and price bot bandwidth.

    \b
    Input is taken from the first usable source:
      --aggregates FILE, then --from-db (stored entries), then --logs FILE.
    """
    db_path = ctx.obj['db_path']
    request = AnalyzeRequest(
        site_id=site_id,
        provider=provider,
        window_start=require_datetime(window_start, '--start'),
        window_end=require_datetime(window_end, '--end'),
        org_id=org_id,
        data_ref=DataRef(aggregates_path=aggregates, db_window=from_db, normalized_path=logs),
        options=AnalyzeOptions(
            use_sherlock=not no_sherlock,
            use_web_search=web_search,
            use_bulk=bulk,
            window_days=window_days,
            price_table_path=price_table,
            pricing=pricing_options(region, netlify_plan, vercel_included_gb, argo),
        ),
    )

    cache = None if no_cache else ClassificationCache(db_path)
    report_store = None if no_store else ReportStore(db_path)
    entry_store = EntryStore(db_path) if from_db else None
    try:
        with console.status("[blue]Analyzing...[/blue]"):
            report = Analyzer(cache=cache, report_store=report_store, entry_store=entry_store).analyze(request)
    except BotmeterError as e:
        fail(e)
    finally:
        for resource in (cache, report_store, entry_store):
            if resource is not None:
                resource.close()

    display_report(report)

    if export_json or export_csv or export_charts:
        exporter = DataExporter(output)
        if export_json:
            console.print(f"[green]JSON exported to: {exporter.export_report_json(report)}[/green]")
        if export_csv:
            console.print(f"[green]Costs CSV exported to: {exporter.export_costs_csv(report)}[/green]")
            console.print(f"[green]Anomalies CSV exported to: {exporter.export_anomalies_csv(report)}[/green]")
        if export_charts:
            console.print(f"[green]Charts exported to: {exporter.create_charts(report)}[/green]")


@cli.command()
@click.option('--id', 'report_id', help='Report id')
@click.option('--site-id', help='Latest report for this site')
@click.option('--json', 'as_json', is_flag=True, help='Print the raw report JSON')
@click.pass_context
def report(ctx, report_id, site_id, as_json):
    """📄 Show a stored report by id, or the latest one for a site."""
    if not report_id and not site_id:
        console.print("[red]Give --id or --site-id[/red]")
        sys.exit(2)
    try:
        with ReportStore(ctx.obj['db_path']) as store:
            found = store.get_by_id(report_id) if report_id else store.get_latest(site_id)
    except BotmeterError as e:
        fail(e)
    if found is None:
        console.print("[yellow]No report found[/yellow]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(found.to_dict(), indent=2))
        return
    summary = report_summary(found)
    console.print(f"[dim]{summary['report_id']} · {summary['window']} · {summary['notes']} note(s)[/dim]")
    display_report(found)


@cli.command()
@click.option('--clear', is_flag=True, help='Remove every cached classification')
@click.pass_context
def cache(ctx, clear):
    """🗄️ Show classification cache statistics, or clear it."""
    with get_classification_cache(ctx.obj['db_path']) as ua_cache:
        if clear:
            removed = ua_cache.clear()
            console.print(f"[green]Removed {removed:,} cached classifications[/green]")
            return
        stats = ua_cache.stats()

    console.print(f"[bold blue]🗄️ CLASSIFICATION CACHE[/bold blue]")
    console.print(f"  Path: [cyan]{stats['database_path']}[/cyan] ({stats['database_size_mb']:.2f} MB)")
    console.print(f"  Entries: [green]{stats['total_entries']:,}[/green]  "
                  f"Bots: [red]{stats['bots']:,}[/red]  Humans: [green]{stats['humans']:,}[/green]")
    if stats['oldest_entry']:
        console.print(f"  Oldest: {stats['oldest_entry']}  Newest: {stats['newest_entry']}")


if __name__ == '__main__':
    cli()
