"""
CLI main entry point.
"""

import argparse
import logging
import mimetypes
import signal
import sys
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..context import SYSTEM_ACTOR, TenantContext
from ..errors import IngestError
from ..schemas.extracted_data import Direction
from ..services.job_queue import PROCESS_DOCUMENT, SYNC_CONNECTOR
from ..state_store import StateStore
from .app import Application
from .worker import JobWorker

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoice-ingest",
        description="Ingest, extract and validate accounting documents",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init command
    subparsers.add_parser("init", help="Write a default config and create the database")

    # ingest command
    ingest_parser = subparsers.add_parser("ingest", help="Upload a document file")
    ingest_parser.add_argument("file", type=Path, help="File to ingest")
    ingest_parser.add_argument("--tenant", required=True, help="Tenant ID")
    ingest_parser.add_argument(
        "--direction",
        choices=[d.value for d in Direction],
        default=Direction.INCOMING.value,
        help="Document direction (default: INCOMING)",
    )
    ingest_parser.add_argument("--actor", default=SYSTEM_ACTOR, help="Acting user ID")
    ingest_parser.add_argument("--mime-type", help="MIME type (guessed from file name if omitted)")

    # worker command
    worker_parser = subparsers.add_parser("worker", help="Run extraction and mailbox workers")
    worker_parser.add_argument(
        "--once",
        action="store_true",
        help="Process due jobs until the queue is empty, then exit",
    )

    # connectors command
    connectors_parser = subparsers.add_parser("connectors", help="Email connector commands")
    connectors_sub = connectors_parser.add_subparsers(dest="connectors_command")
    list_parser = connectors_sub.add_parser("list", help="List a tenant's connectors")
    list_parser.add_argument("--tenant", required=True, help="Tenant ID")
    sync_parser = connectors_sub.add_parser("sync", help="Poll a connector now")
    sync_parser.add_argument("connector_id", type=int, help="Connector ID")
    sync_parser.add_argument("--tenant", required=True, help="Tenant ID")

    # revalidate command
    revalidate_parser = subparsers.add_parser(
        "revalidate", help="Re-run validation for all processed documents"
    )
    revalidate_parser.add_argument("--tenant", required=True, help="Tenant ID")

    # status command
    status_parser = subparsers.add_parser("status", help="Show document and queue statistics")
    status_parser.add_argument("--tenant", help="Tenant ID (document counts)")

    return parser


def cmd_init(config_path: Path, config: Config) -> int:
    """Create config file and database."""
    if config_path.exists():
        print(f"ℹ️  Config already exists: {config_path}")
    else:
        create_default_config(config_path)
        print(f"✓ Wrote default config to {config_path}")

    StateStore(config.state_db_path)
    print(f"✓ Database ready at {config.state_db_path}")
    return 0


def cmd_ingest(
    config: Config,
    file: Path,
    tenant: str,
    direction: str,
    actor: str,
    mime_type: str | None,
) -> int:
    """Ingest a single file."""
    if not file.is_file():
        print(f"❌ File not found: {file}")
        return 1
    mime_type = mime_type or mimetypes.guess_type(file.name)[0] or "application/octet-stream"

    app = Application(config)
    try:
        document = app.gateway.ingest(
            TenantContext(tenant, actor),
            file.read_bytes(),
            mime_type,
            direction=Direction(direction),
            file_name=file.name,
        )
    except IngestError as e:
        print(f"❌ {e}")
        return 1
    finally:
        app.close()

    print(f"✓ Ingested {file.name} as document {document.id} (#{document.sequential_number:03d})")
    return 0


def cmd_worker(config: Config, once: bool) -> int:
    """Run workers until interrupted (or until the queue is drained)."""
    errors = config.validate()
    if errors:
        for error in errors:
            print(f"❌ {error}")
        return 1

    app = Application(config)
    try:
        if once:
            return _drain_queue(app)

        pool = app.start_workers()

        def _shutdown(signum, frame):
            print("\nShutdown requested, finishing current jobs...")
            pool.stop_event.set()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)

        print(
            f"🚀 Workers running (extraction x{config.queue.worker_concurrency}, "
            f"email x{config.queue.email_concurrency})"
        )
        # Periodic stalled-job recovery while the pool runs
        while not pool.stop_event.wait(config.queue.lock_seconds):
            app.queue.recover_stalled()
        pool.stop()
    finally:
        app.close()
    return 0


def _drain_queue(app: Application) -> int:
    app.queue.recover_stalled()
    worker = JobWorker(
        app.queue,
        {
            PROCESS_DOCUMENT: app.handle_process_document,
            SYNC_CONNECTOR: app.handle_sync_connector,
        },
    )
    while worker.run_once():
        pass
    print(f"✓ Processed {worker.processed} job(s), {worker.failed} failed")
    return 0 if worker.failed == 0 else 1


def cmd_connectors_list(config: Config, tenant: str) -> int:
    """List connectors."""
    store = StateStore(config.state_db_path)
    connectors = store.list_email_connectors(tenant)
    if not connectors:
        print("No email connectors")
        return 0

    print(f"\n📬 Email connectors for {tenant}")
    print("=" * 60)
    for c in connectors:
        state = "active" if c.is_active else "INACTIVE"
        print(
            f"  [{c.id}] {c.label} {c.username}@{c.host}:{c.port}/{c.folder} "
            f"({state}, last: {c.last_sync_status.value}, failures: {c.consecutive_failures})"
        )
        if c.last_sync_error:
            print(f"        last error: {c.last_sync_error}")
    return 0


def cmd_connectors_sync(config: Config, tenant: str, connector_id: int) -> int:
    """Poll one connector in the foreground."""
    app = Application(config)
    try:
        result = app.email_sync.sync_connector(TenantContext.system(tenant), connector_id)
    except IngestError as e:
        print(f"❌ {e}")
        return 1
    finally:
        app.close()

    if result.skipped:
        print("ℹ️  Connector is already syncing")
        return 0
    print(
        f"✓ {result.processed_emails} email(s), {result.created_documents} document(s), "
        f"{result.skipped_duplicates} duplicate(s)"
    )
    for error in result.errors:
        print(f"  ⚠️  {error}")
    return 0 if not result.errors else 1


def cmd_revalidate(config: Config, tenant: str) -> int:
    """Re-validate all processed documents of a tenant."""
    app = Application(config)
    try:
        result = app.validation.revalidate_all(TenantContext.system(tenant))
    finally:
        app.close()

    print(f"✓ Re-validated {result.updated}/{result.total} document(s)")
    for error in result.errors:
        print(f"  ⚠️  {error}")
    return 0 if result.success else 1


def cmd_status(config: Config, tenant: str | None) -> int:
    """Show pipeline status."""
    store = StateStore(config.state_db_path)

    print("\n📊 Pipeline Status")
    print("=" * 40)
    if tenant:
        counts = store.count_documents_by_status(tenant)
        print(f"  Documents ({tenant}):")
        for status, count in sorted(counts.items()):
            print(f"    {status:<18} {count}")
    print("  Jobs:")
    for status, count in store.get_queue_stats().items():
        print(f"    {status:<18} {count}")
    print()

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "init":
        return cmd_init(parsed.config, config)
    elif parsed.command == "ingest":
        return cmd_ingest(
            config, parsed.file, parsed.tenant, parsed.direction, parsed.actor, parsed.mime_type
        )
    elif parsed.command == "worker":
        return cmd_worker(config, parsed.once)
    elif parsed.command == "connectors":
        if parsed.connectors_command == "list":
            return cmd_connectors_list(config, parsed.tenant)
        elif parsed.connectors_command == "sync":
            return cmd_connectors_sync(config, parsed.tenant, parsed.connector_id)
        parser.print_help()
        return 1
    elif parsed.command == "revalidate":
        return cmd_revalidate(config, parsed.tenant)
    elif parsed.command == "status":
        return cmd_status(config, parsed.tenant)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
