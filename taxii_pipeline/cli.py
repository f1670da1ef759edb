"""Command-line interface for the TAXII ingestion pipeline."""

import click
import json
import csv
import functools
import logging
import sys
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from tabulate import tabulate
from colorama import init, Fore, Style
from apscheduler.schedulers.blocking import BlockingScheduler

# Initialize colorama for cross-platform colored output
init(autoreset=True)

from taxii_pipeline.config import Config
from taxii_pipeline.errors import PipelineError
from taxii_pipeline.ingestion import STIXBundleParser, TAXIICollectionPoller
from taxii_pipeline.models import AUTH_TYPES, SEVERITIES, TAXIIServer
from taxii_pipeline.normalization import IOCNormalizer
from taxii_pipeline.scheduler import PollingScheduler
from taxii_pipeline.storage import ThreatIntelDB

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
IOC_FIELDS = ['type', 'value', 'confidence', 'severity', 'first_seen', 'last_seen',
              'valid_until', 'tags', 'description', 'source_stix_id', 'false_positive']

logger = logging.getLogger(__name__)


def handle_errors(func):
    """Report pipeline errors in red and exit non-zero."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PipelineError as e:
            click.echo(f"{Fore.RED}Error: {e}{Style.RESET_ALL}", err=True)
            sys.exit(1)
    return wrapper


def _get_db(config: Config) -> ThreatIntelDB:
    return ThreatIntelDB(config.get_db_path(), timeout=config.get('database.timeout_seconds', 30))


def _get_poller(config: Config, db: ThreatIntelDB) -> TAXIICollectionPoller:
    return TAXIICollectionPoller.from_config(config, db, STIXBundleParser(db))


def _get_server(db: ThreatIntelDB, name: str) -> TAXIIServer:
    server = db.get_server_by_name(name)
    if server is None:
        click.echo(f"{Fore.RED}Error: Server '{name}' not found. Run 'taxii-pipeline sync-servers' "
                   f"or 'taxii-pipeline add-server' first{Style.RESET_ALL}", err=True)
        sys.exit(1)
    return server


def _print_sweep(result):
    polling = result['polling']
    click.echo(f"Collections polled: {polling['collectionsPolled']}")
    click.echo(f"Objects fetched: {polling['totalObjectsFetched']}")
    click.echo(f"IOCs extracted: {polling['totalIOCsExtracted']}")

    for error in polling['errors']:
        click.echo(f"{Fore.RED}  {error}{Style.RESET_ALL}")

    for task, outcome in result['housekeeping'].items():
        if outcome.get('success'):
            click.echo(f"{Fore.GREEN}Housekeeping {task}: ok{Style.RESET_ALL}")
        else:
            click.echo(f"{Fore.YELLOW}Housekeeping {task}: {outcome.get('error')}{Style.RESET_ALL}")


@click.group()
@click.option('--config', type=click.Path(exists=True), help='Path to custom config file')
@click.pass_context
def cli(ctx, config):
    """
    TAXII 2.1 Ingestion Pipeline CLI

    Polls TAXII 2.1 servers for STIX 2.1 content, stores the objects and
    relationships, and maintains a deduplicated, scored IOC table.
    """
    ctx.ensure_object(dict)
    ctx.obj['config'] = Config(config)

    level = str(ctx.obj['config'].get('logging.level', 'INFO')).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@cli.command('add-server')
@click.argument('name')
@click.argument('url')
@click.option('--api-root', help='API root URL (discovered if omitted)')
@click.option('--auth-type', type=click.Choice(AUTH_TYPES), default='none', help='Authentication type')
@click.option('--username', help='Basic auth username')
@click.option('--password', help='Basic auth password')
@click.option('--api-key', help='Bearer API key')
@click.option('--no-verify-ssl', is_flag=True, help='Disable TLS certificate verification')
@click.option('--inactive', is_flag=True, help='Register the server without polling it')
@click.pass_context
@handle_errors
def add_server(ctx, name, url, api_root, auth_type, username, password, api_key, no_verify_ssl, inactive):
    """Register or update a TAXII server."""
    db = _get_db(ctx.obj['config'])
    server = TAXIIServer(
        name=name, url=url, api_root=api_root, auth_type=auth_type,
        username=username, password=password, api_key=api_key,
        verify_ssl=not no_verify_ssl, is_active=not inactive,
    )
    server_id = db.upsert_server(server)
    click.echo(f"{Fore.GREEN}Server '{name}' saved (id {server_id}){Style.RESET_ALL}")


@cli.command('sync-servers')
@click.pass_context
@handle_errors
def sync_servers(ctx):
    """Register the servers listed under taxii_servers in the config."""
    config = ctx.obj['config']
    db = _get_db(config)

    try:
        servers = config.get_taxii_servers()
    except (KeyError, ValueError) as e:
        raise click.ClickException(f"Invalid taxii_servers entry: {e}")

    if not servers:
        click.echo(f"{Fore.YELLOW}No TAXII servers configured{Style.RESET_ALL}")
        return

    table_data = []
    for server in servers:
        server_id = db.upsert_server(server)
        table_data.append([server_id, server.name, server.url, server.auth_type,
                           'yes' if server.is_active else 'no'])

    click.echo(tabulate(table_data, headers=['ID', 'Name', 'URL', 'Auth', 'Active'], tablefmt='grid'))


@cli.command('test-connection')
@click.argument('name')
@click.pass_context
@handle_errors
def test_connection(ctx, name):
    """Check that a registered server answers discovery."""
    config = ctx.obj['config']
    db = _get_db(config)
    server = _get_server(db, name)

    result = _get_poller(config, db).test_connection(server)

    click.echo(f"{Fore.GREEN}Connected to {server.name}{Style.RESET_ALL}")
    for api_root in result['api_roots']:
        click.echo(f"  API root: {api_root}")
    click.echo(f"  Collections: {result['collection_count']}")


@cli.command()
@click.argument('name')
@click.pass_context
@handle_errors
def discover(ctx, name):
    """Discover and register the collections of a server."""
    config = ctx.obj['config']
    db = _get_db(config)
    server = _get_server(db, name)

    count = _get_poller(config, db).discover_collections(server.id)
    click.echo(f"{Fore.GREEN}Discovered {count} collection(s) on {server.name}{Style.RESET_ALL}\n")

    table_data = [
        [c.id, c.collection_id, c.title[:40], 'yes' if c.can_read else 'no', c.polling_interval_minutes]
        for c in db.list_collections(server.id)
    ]
    if table_data:
        click.echo(tabulate(table_data, headers=['ID', 'Collection', 'Title', 'Readable', 'Interval (min)'],
                            tablefmt='grid'))


@cli.command()
@click.option('--server', help='Only show collections of this server')
@click.pass_context
@handle_errors
def collections(ctx, server):
    """List known collections and their polling state."""
    db = _get_db(ctx.obj['config'])
    server_id = _get_server(db, server).id if server else None

    states = db.list_collections(server_id)
    if not states:
        click.echo(f"{Fore.YELLOW}No collections found{Style.RESET_ALL}")
        return

    table_data = []
    for state in states:
        table_data.append([
            state.id,
            state.title[:30],
            'yes' if state.is_polling_enabled else 'no',
            state.polling_interval_minutes,
            state.last_poll_status,
            (state.last_poll_at or 'never')[:19],
            (state.next_poll_at or 'now')[:19],
            state.objects_count,
        ])

    headers = ['ID', 'Title', 'Enabled', 'Interval', 'Status', 'Last Poll', 'Next Poll', 'Objects']
    click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))


@cli.command('set-polling')
@click.argument('collection_id', type=int)
@click.option('--enable/--disable', default=None, help='Enable or disable polling')
@click.option('--interval', type=click.IntRange(min=1), help='Polling interval in minutes')
@click.pass_context
@handle_errors
def set_polling(ctx, collection_id, enable, interval):
    """Change the polling settings of a collection."""
    db = _get_db(ctx.obj['config'])
    if db.get_collection(collection_id) is None:
        click.echo(f"{Fore.RED}Error: Collection {collection_id} not found{Style.RESET_ALL}", err=True)
        sys.exit(1)

    db.set_collection_polling(collection_id, enabled=enable, interval_minutes=interval)
    state = db.get_collection(collection_id)
    click.echo(f"Collection {state.id}: polling {'enabled' if state.is_polling_enabled else 'disabled'}, "
               f"every {state.polling_interval_minutes} minutes")


@cli.command()
@click.argument('collection_id', type=int)
@click.pass_context
@handle_errors
def poll(ctx, collection_id):
    """Poll one collection now."""
    config = ctx.obj['config']
    db = _get_db(config)

    result = _get_poller(config, db).poll_collection(collection_id)

    click.echo(f"{Fore.GREEN}Polled collection {result.collection_id}{Style.RESET_ALL}")
    click.echo(f"Objects stored: {result.objects_fetched}")
    click.echo(f"Relationships stored: {result.relationships_stored}")
    click.echo(f"IOCs extracted: {result.iocs_extracted}")
    click.echo(f"Next poll at: {result.next_poll_at}")
    if result.has_more:
        click.echo(f"{Fore.YELLOW}More objects pending, collection stays due{Style.RESET_ALL}")


@cli.command('poll-due')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
@handle_errors
def poll_due(ctx, as_json):
    """
    Poll every due collection, then run housekeeping.

    Intended to be run from cron, e.g. every 15 minutes.
    """
    config = ctx.obj['config']
    db = _get_db(config)
    scheduler = PollingScheduler.from_config(config, db, _get_poller(config, db))

    result = scheduler.run()

    if as_json:
        click.echo(json.dumps(result, indent=2, default=str))
    else:
        _print_sweep(result)


@cli.command()
@click.option('--interval', default=15, type=click.IntRange(min=1),
              help='Minutes between sweeps (default: 15)')
@click.option('--max-runs', default=0, type=int, help='Stop after this many sweeps (default: run forever)')
@click.pass_context
@handle_errors
def watch(ctx, interval, max_runs):
    """Run polling sweeps on an interval until interrupted."""
    config = ctx.obj['config']
    db = _get_db(config)
    scheduler = PollingScheduler.from_config(config, db, _get_poller(config, db))
    blocking = BlockingScheduler()
    runs = 0

    def sweep():
        nonlocal runs
        _print_sweep(scheduler.run())
        runs += 1
        if max_runs and runs >= max_runs:
            logger.info(f"Reached {max_runs} sweep(s), stopping")
            blocking.shutdown(wait=False)

    blocking.add_job(sweep, 'interval', minutes=interval, next_run_time=datetime.now(),
                     max_instances=1, coalesce=True)

    click.echo(f"{Fore.CYAN}Polling every {interval} minute(s), Ctrl+C to stop{Style.RESET_ALL}")
    try:
        blocking.start()
    except (KeyboardInterrupt, SystemExit):
        scheduler.stop()
        if blocking.running:
            blocking.shutdown(wait=False)
        click.echo(f"\n{Fore.YELLOW}Stopped{Style.RESET_ALL}")


@cli.command()
@click.option('--ioc', help='IOC value to search for')
@click.option('--type', 'ioc_type', help='Filter by IOC type (e.g., ip, domain, file_hash)')
@click.option('--severity', type=click.Choice(SEVERITIES), help='Filter by severity')
@click.option('--confidence', type=int, help='Minimum confidence score (0-100)')
@click.option('--exclude-false-positives', is_flag=True, help='Hide IOCs flagged as false positives')
@click.option('--limit', default=50, help='Maximum results to return (default: 50)')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json', 'csv']), default='table',
              help='Output format (default: table)')
@click.pass_context
@handle_errors
def search(ctx, ioc, ioc_type, severity, confidence, exclude_false_positives, limit, output_format):
    """
    Search for IOCs in the local database.

    Use various filters to find specific IOCs or patterns.
    """
    db = _get_db(ctx.obj['config'])

    results = db.search_iocs(
        ioc_value=ioc,
        ioc_type=ioc_type,
        severity=severity,
        min_confidence=confidence,
        include_false_positives=not exclude_false_positives,
        limit=limit
    )

    if not results:
        click.echo(f"{Fore.YELLOW}No IOCs found{Style.RESET_ALL}")
        return

    if output_format == 'json':
        click.echo(json.dumps([asdict(r) for r in results], indent=2, default=str))

    elif output_format == 'csv':
        writer = csv.DictWriter(click.get_text_stream('stdout'), fieldnames=IOC_FIELDS)
        writer.writeheader()
        for result in results:
            writer.writerow(_ioc_row(result))

    else:
        table_data = []
        for result in results:
            table_data.append([
                result.type[:15],
                result.value[:50],
                result.confidence,
                result.severity,
                (result.last_seen or 'N/A')[:10],
                'yes' if result.false_positive else ''
            ])

        headers = ['Type', 'Value', 'Confidence', 'Severity', 'Last Seen', 'False Positive']
        click.echo(f"{Fore.GREEN}Found {len(results)} IOC(s){Style.RESET_ALL}\n")
        click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))


def _ioc_row(ioc):
    row = {k: v for k, v in asdict(ioc).items() if k in IOC_FIELDS}
    row['tags'] = ','.join(row['tags'])
    return row


@cli.command('mark-false-positive')
@click.argument('ioc_type')
@click.argument('value')
@click.option('--clear', is_flag=True, help='Remove the false positive flag instead')
@click.pass_context
@handle_errors
def mark_false_positive(ctx, ioc_type, value, clear):
    """Flag an IOC as a false positive (sticky across re-ingestion)."""
    db = _get_db(ctx.obj['config'])
    if not IOCNormalizer(db).mark_false_positive(ioc_type, value, flag=not clear):
        click.echo(f"{Fore.RED}Error: IOC {ioc_type}:{value} not found{Style.RESET_ALL}", err=True)
        sys.exit(1)

    state = 'cleared' if clear else 'set'
    click.echo(f"{Fore.GREEN}False positive flag {state} for {ioc_type}:{value}{Style.RESET_ALL}")


@cli.command()
@click.option('--output', required=True, type=click.Path(dir_okay=False), help='Output file path')
@click.option('--format', 'output_format', type=click.Choice(['json', 'csv', 'stix']),
              required=True, help='Export format')
@click.option('--type', 'ioc_type', help='Filter by IOC type')
@click.option('--severity', type=click.Choice(SEVERITIES), help='Filter by severity')
@click.option('--confidence', type=int, help='Minimum confidence score')
@click.option('--limit', default=1000, help='Maximum IOCs to export (default: 1000)')
@click.pass_context
@handle_errors
def export(ctx, output, output_format, ioc_type, severity, confidence, limit):
    """
    Export IOCs to a file, skipping false positives.

    Supports JSON, CSV, and STIX formats. The STIX format writes a bundle
    of the indicators the IOCs were extracted from.
    """
    db = _get_db(ctx.obj['config'])

    results = db.search_iocs(
        ioc_type=ioc_type,
        severity=severity,
        min_confidence=confidence,
        include_false_positives=False,
        limit=limit
    )

    if not results:
        click.echo(f"{Fore.YELLOW}No IOCs to export{Style.RESET_ALL}")
        return

    click.echo(f"{Fore.YELLOW}Exporting {len(results)} IOC(s)...{Style.RESET_ALL}")

    output_path = Path(output)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if output_format == 'json':
        with open(output_path, 'w') as f:
            json.dump([asdict(r) for r in results], f, indent=2, default=str)

    elif output_format == 'csv':
        with open(output_path, 'w', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=IOC_FIELDS)
            writer.writeheader()
            for result in results:
                writer.writerow(_ioc_row(result))

    elif output_format == 'stix':
        stix_bundle = {
            "type": "bundle",
            "id": f"bundle--{uuid.uuid4()}",
            "objects": []
        }

        seen = set()
        for result in results:
            if not result.source_stix_id or result.source_stix_id in seen:
                continue
            seen.add(result.source_stix_id)
            stored = db.get_stix_object(result.source_stix_id)
            if stored and stored.get('raw_data'):
                stix_bundle['objects'].append(stored['raw_data'])

        with open(output_path, 'w') as f:
            json.dump(stix_bundle, f, indent=2, default=str)

    click.echo(f"{Fore.GREEN}Exported to {output_path}{Style.RESET_ALL}")


@cli.command()
@click.pass_context
@handle_errors
def stats(ctx):
    """
    Display database and polling statistics.
    """
    config = ctx.obj['config']
    db = _get_db(config)
    stats = STIXBundleParser(db).get_statistics()
    polling = _get_poller(config, db).get_polling_statistics()

    click.echo(f"{Fore.CYAN}=== Database Statistics ==={Style.RESET_ALL}\n")
    click.echo(f"Database path: {config.get_db_path()}")
    click.echo(f"STIX objects: {stats['total_objects']}")
    click.echo(f"Relationships: {stats['total_relationships']}")
    click.echo(f"Bundles: {stats['total_bundles']}")
    click.echo(f"IOCs: {stats['total_iocs']}\n")

    if stats['objects_by_type']:
        click.echo("Objects by type:")
        click.echo(tabulate(sorted(stats['objects_by_type'].items(), key=lambda x: x[1], reverse=True),
                            headers=['Type', 'Count'], tablefmt='grid'))
        click.echo()

    if stats['iocs_by_type']:
        click.echo("IOCs by type:")
        click.echo(tabulate(sorted(stats['iocs_by_type'].items(), key=lambda x: x[1], reverse=True),
                            headers=['Type', 'Count'], tablefmt='grid'))
        click.echo()

    click.echo(f"{Fore.CYAN}=== Polling ==={Style.RESET_ALL}\n")
    click.echo(f"Active servers: {polling['active_servers']}")
    click.echo(f"Collections: {polling['total_collections']} "
               f"({polling['enabled_collections']} enabled, {polling['due_for_polling']} due)")

    if polling['last_poll_results']:
        table_data = [
            [r['server_name'], (r['title'] or '')[:30], (r['last_poll_at'] or 'never')[:19],
             r['last_poll_status'], (r['last_poll_error'] or '')[:50]]
            for r in polling['last_poll_results']
        ]
        click.echo(tabulate(table_data, headers=['Server', 'Collection', 'Last Poll', 'Status', 'Error'],
                            tablefmt='grid'))


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == '__main__':
    main()
