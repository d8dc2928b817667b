"""Command-line entry point for content sync.

Works on JSON snapshots of the configured nodes (one ``JsonFileStore``
per node below ``<state_dir>/nodes``).  Every command prints one
``success::<text>`` or ``error::<text>`` line on stdout; diagnostics go
to stderr through logging.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from . import __version__
from .config import Config, NodeSite, load_config
from .config_loader import discover_config_files, ensure_config, load_hierarchical_config
from .config_schema import LoggingConfig, build_config, yaml_fallbacks
from .core.client import RemoteClient
from .core.context import Cluster, GidLocks, NodeContext
from .errors import ContentSyncError, admin_message
from .logger import setup_logging
from .sync.archive import open_archive
from .sync.connection_map import ConnectionMap
from .sync.distributor import Distributor
from .sync.exporter import ExportEngine, make_root
from .sync.importer import ImportEngine
from .sync.meta import get_export_options
from .sync.reporter import format_import_report, report_to_json
from .sync.state import DistributionStore, RetryQueue
from .sync.store import JsonFileStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


class Runtime:
    """Configuration, cluster and engines shared by the commands."""

    def __init__(self, config: Config) -> None:
        self.config = config
        state_dir = Path(config.state_dir)
        self.stores: dict[int, JsonFileStore] = {}

        def store_factory(site: NodeSite) -> JsonFileStore:
            store = JsonFileStore(
                state_dir / "nodes" / f"node-{site.node_id}.json",
                site_url=site.site_url,
                upload_url=site.upload_url
                or f"{site.site_url.rstrip('/')}/wp-content/uploads",
            )
            self.stores[site.node_id] = store
            return store

        self.cluster = Cluster.from_config(config, store_factory)
        self.locks = GidLocks()
        self.client = RemoteClient(config)
        self.connection_map = ConnectionMap(
            self.cluster,
            self.locks,
            config=config,
            client=self.client,
            retry_queue=RetryQueue(state_dir, max_attempts=config.retry_max_attempts),
        )
        self.distributor = Distributor(
            self.cluster,
            config,
            DistributionStore(state_dir),
            self.locks,
            client=self.client,
            connection_map=self.connection_map,
        )

    def node(self, node_id: int | None) -> NodeContext:
        wanted = node_id if node_id is not None else self.config.node_id
        ctx = self.cluster.node(wanted)
        if ctx is None:
            raise ContentSyncError(f"Node {wanted} is not configured")
        return ctx

    def save(self) -> None:
        for store in self.stores.values():
            store.save()


def _load_runtime_config(args: argparse.Namespace) -> tuple[Config, LoggingConfig]:
    """Merge CLI > env (.env loaded first) > YAML > defaults."""
    fallbacks: dict[str, Any] | None = None
    logging_config = LoggingConfig()
    if discover_config_files():
        unified = build_config(load_hierarchical_config())
        fallbacks = yaml_fallbacks(unified)
        logging_config = unified.logging
    config = load_config(
        network_url=args.network_url,
        insecure=args.insecure,
        debug=args.debug,
        yaml_fallbacks=fallbacks,
    )
    if args.state_dir:
        config.state_dir = args.state_dir
    return config, logging_config


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_export(runtime: Runtime, args: argparse.Namespace) -> tuple[bool, str]:
    ctx = runtime.node(args.node)
    options = get_export_options(ctx.store, args.post_id)
    path = ExportEngine(ctx).export_to_archive(args.post_id, options, Path(args.archive))
    if path is None:
        return False, f"Post {args.post_id} could not be exported."
    return True, f"Exported to {path}"


def cmd_import(runtime: Runtime, args: argparse.Namespace) -> tuple[bool, str]:
    ctx = runtime.node(args.node)
    engine = ImportEngine(
        ctx,
        cluster=runtime.cluster,
        connection_map=runtime.connection_map,
        client=runtime.client,
        locks=runtime.locks,
    )
    with open_archive(Path(args.archive)) as (posts, media_dir):
        report = engine.import_posts(posts, media_dir=media_dir)
    runtime.save()

    if args.json:
        print(json.dumps(report_to_json(report), indent=2), file=sys.stderr)
    else:
        print(format_import_report(report), file=sys.stderr)
    if report.ok:
        return True, f"{len(report.results)} posts imported into node {ctx.node_id}."
    return False, report.first_error or "Import failed."


def cmd_check(runtime: Runtime, args: argparse.Namespace) -> tuple[bool, str]:
    ctx = runtime.node(args.node)
    result = runtime.connection_map.check(ctx, args.post_id)
    runtime.save()
    return result["status"] != "not_root_post", result["text"]


def cmd_make_root(runtime: Runtime, args: argparse.Namespace) -> tuple[bool, str]:
    ctx = runtime.node(args.node)
    gid = make_root(ctx, args.post_id)
    runtime.save()
    return True, f"Post {args.post_id} is now synced as {gid}"


def cmd_distribute(runtime: Runtime, args: argparse.Namespace) -> tuple[bool, str]:
    ctx = runtime.node(args.node)
    destinations = args.to.split(",") if args.to else None
    ok = runtime.distributor.distribute(ctx, args.post_id, destinations)
    runtime.save()
    if ok:
        return True, f"Post {args.post_id} was distributed."
    return False, f"Distribution of post {args.post_id} failed for some destinations."


def cmd_flush_retries(runtime: Runtime, args: argparse.Namespace) -> tuple[bool, str]:
    done = runtime.connection_map.flush_retry_queue()
    runtime.save()
    return True, f"{done} queued connection updates replayed."


COMMANDS = {
    "export": cmd_export,
    "import": cmd_import,
    "check": cmd_check,
    "make-root": cmd_make_root,
    "distribute": cmd_distribute,
    "flush-retries": cmd_flush_retries,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contentsync",
        description="Content Sync - keep posts consistent across connected sites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create a starter config in .contentsync/config.yml
  contentsync config-init

  # Mark post 10 of node 1 as synced
  contentsync make-root 10 --node 1

  # Export post 10 and everything it references into a zip
  contentsync export 10 --archive ./exports

  # Import an archive into node 2
  contentsync import ./exports/2026-10/hello_world-post-main-2026-10-18.zip --node 2

  # Repair the connection map of a root
  contentsync check 10
        """,
    )
    parser.add_argument("--network-url", help="Override the network URL")
    parser.add_argument("--state-dir", help="Directory holding node snapshots and sync state")
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Mirror log output to this file")
    parser.add_argument(
        "--version", action="version", version=f"contentsync version {__version__}"
    )

    node = argparse.ArgumentParser(add_help=False)
    node.add_argument("--node", type=int, help="Node to work on (default: configured node)")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("export", parents=[node], help="Export a post into a zip archive")
    p.add_argument("post_id", type=int)
    p.add_argument("--archive", required=True, help="Target directory")

    p = sub.add_parser("import", parents=[node], help="Import a zip archive")
    p.add_argument("archive", help="Path to the archive")
    p.add_argument("--json", action="store_true", help="Print the report as JSON")

    p = sub.add_parser("check", parents=[node], help="Rebuild the connection map of a root")
    p.add_argument("post_id", type=int)

    p = sub.add_parser("make-root", parents=[node], help="Mark a post as synced root")
    p.add_argument("post_id", type=int)

    p = sub.add_parser("distribute", parents=[node], help="Distribute a root to its destinations")
    p.add_argument("post_id", type=int)
    p.add_argument("--to", help="Comma-separated destinations like '2,3|remote.example'")

    sub.add_parser("flush-retries", parents=[node], help="Replay queued remote connection updates")
    sub.add_parser("config-init", help="Write a starter config file")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv()
    setup_logging(mode="cli", debug=args.debug, log_file=args.log_file)

    if args.command == "config-init":
        path = ensure_config()
        print(admin_message(True, f"Config file: {path}"))
        return 0

    try:
        config, logging_config = _load_runtime_config(args)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        print(admin_message(False, f"Configuration error: {e}"))
        return 1

    setup_logging(
        mode="cli",
        debug=config.debug,
        log_file=args.log_file or logging_config.file,
        debug_format=logging_config.format,
    )

    try:
        runtime = Runtime(config)
        ok, text = COMMANDS[args.command](runtime, args)
    except ContentSyncError as e:
        ok, text = False, e.message
    except OSError as e:
        logger.exception("I/O error in %s", args.command)
        ok, text = False, str(e)

    print(admin_message(ok, text))
    return 0 if ok else 1


def run() -> None:
    """Entry point that handles errors gracefully."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
