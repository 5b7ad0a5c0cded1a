"""
THREADLINE MAIN - Entry Point and CLI

Commands:
    order      - Resolve the transcript order of a snapshot file
    transcript - Render the chat preview of a snapshot (optionally a test session)
    export     - Export graph tables of a snapshot to parquet
    import     - Validate a snapshot file and store it as the working state
    dump       - Print the stored working (or default) state as JSON
    info       - Show what is stored
    clear      - Delete the stored working (or default) state

Usage:
    # Resolve order
    python main.py order flow.json

    # Preview, replaying up to a message
    python main.py transcript flow.json --test msg-2

    # Graph tables for analysis
    python main.py export flow.json --output ./export

    # Storage round trip
    python main.py import flow.json
    python main.py info
    python main.py dump --default

Global options:
    --config PATH   TOML configuration (default: config/threadline.toml)
"""
import sys
from pathlib import Path
from typing import Optional

# Add threadline to path for imports
sys.path.insert(0, str(Path(__file__).parent))


def _load_snapshot_file(path: str):
    """Read and validate a snapshot file, exiting with a message on failure."""
    import msgspec
    from core.ontology import SNAPSHOT_VERSION
    from core.schemas import deserialize_snapshot

    try:
        snapshot = deserialize_snapshot(Path(path).read_bytes())
    except OSError as e:
        print(f"Cannot read {path}: {e}", file=sys.stderr)
        sys.exit(1)
    except (msgspec.DecodeError, msgspec.ValidationError) as e:
        print(f"Malformed snapshot {path}: {e}", file=sys.stderr)
        sys.exit(1)

    if snapshot.version != SNAPSHOT_VERSION:
        print(f"Unsupported snapshot version {snapshot.version} (expected {SNAPSHOT_VERSION})", file=sys.stderr)
        sys.exit(1)
    return snapshot


def _workspace(args, snapshot=None):
    from core.workspace import Workspace

    workspace = Workspace(config=args.config)
    if snapshot is not None:
        workspace.restore(snapshot)
    return workspace


def _store(args):
    from infrastructure.storage import SnapshotStore

    storage = args.config.storage
    return SnapshotStore(storage.path, key=storage.key, default_key=storage.default_key)


def cmd_order(args):
    """Handle order command - print the resolved message order."""
    workspace = _workspace(args, _load_snapshot_file(args.snapshot))
    resolved = workspace.db.resolve()

    for position, message_id in enumerate(resolved.order, start=1):
        marker = "  (orphan)" if message_id in resolved.orphans else ""
        print(f"{position:3d}. {message_id}{marker}")
    if workspace.db.has_cycle():
        print("Note: the flow contains a cycle")


def cmd_transcript(args):
    """Handle transcript command - render preview rows."""
    from core.projector import RowKind

    workspace = _workspace(args, _load_snapshot_file(args.snapshot))
    if args.test and not workspace.test_mode.enter(args.test):
        print(f"Message not in transcript: {args.test}", file=sys.stderr)
        sys.exit(1)

    for row in workspace.transcript():
        if row.kind == RowKind.PLACEHOLDER:
            print(f"      [{row.text}]")
            continue
        flags = " (orphan)" if row.orphan else ""
        sender = row.message.sender.value.upper()
        print(f"{sender:>4}: {row.text}{flags}")
        if row.choices:
            print(f"      {row.choice_label}: {', '.join(row.choices)}")


def cmd_export(args):
    """Handle export command - export graph tables to parquet."""
    workspace = _workspace(args, _load_snapshot_file(args.snapshot))

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    print(f"Exporting graph to {output_dir}...")
    nodes_path, edges_path = workspace.db.save_parquet(output_dir / "flow")
    print(f"Exported {workspace.db.node_count} nodes, {workspace.db.edge_count} edges")
    print(f"  Nodes: {nodes_path}")
    print(f"  Edges: {edges_path}")


def cmd_import(args):
    """Handle import command - store a snapshot file as the working state."""
    store = _store(args)
    snapshot = _load_snapshot_file(args.snapshot)
    saved = store.save_default(snapshot) if args.default else store.save(snapshot)
    if not saved:
        print("Import failed (see log)", file=sys.stderr)
        sys.exit(1)
    print(f"Imported {len(snapshot.nodes)} nodes, {len(snapshot.messages)} messages")


def cmd_dump(args):
    """Handle dump command - print stored JSON."""
    store = _store(args)
    text = store.export_state(store.default_key if args.default else None)
    if text is None:
        print("Nothing stored", file=sys.stderr)
        sys.exit(1)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        print(f"Wrote {args.output}")
    else:
        print(text)


def cmd_info(args):
    """Handle info command - show storage slots."""
    store = _store(args)
    print(f"Storage: {store.db_path}")
    for key in (store.key, store.default_key):
        info = store.storage_info(key)
        if info.exists:
            print(f"  {key}: {info.size_bytes} bytes, version {info.version}, saved {info.last_saved}")
        else:
            print(f"  {key}: empty")


def cmd_clear(args):
    """Handle clear command."""
    store = _store(args)
    ok = store.clear_default() if args.default else store.clear()
    if not ok:
        sys.exit(1)
    print("Cleared")


def main(argv: Optional[list] = None):
    """Main entry point with subcommands."""
    import argparse
    from infrastructure.config import configure_logging, load_config

    parser = argparse.ArgumentParser(
        description="Threadline - conversation flow graph to chat transcript",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=str, help="Path to TOML configuration")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # order command
    order_parser = subparsers.add_parser("order", help="Resolve transcript order")
    order_parser.add_argument("snapshot", help="Path to snapshot JSON")
    order_parser.set_defaults(func=cmd_order)

    # transcript command
    transcript_parser = subparsers.add_parser("transcript", help="Render the chat preview")
    transcript_parser.add_argument("snapshot", help="Path to snapshot JSON")
    transcript_parser.add_argument("--test", metavar="MESSAGE_ID", help="Replay up to this message")
    transcript_parser.set_defaults(func=cmd_transcript)

    # export command
    export_parser = subparsers.add_parser("export", help="Export graph tables to parquet")
    export_parser.add_argument("snapshot", help="Path to snapshot JSON")
    export_parser.add_argument("--output", "-o", default="./export", help="Output directory")
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser("import", help="Store a snapshot file")
    import_parser.add_argument("snapshot", help="Path to snapshot JSON")
    import_parser.add_argument("--default", action="store_true", help="Store as the default state")
    import_parser.set_defaults(func=cmd_import)

    # dump command
    dump_parser = subparsers.add_parser("dump", help="Print stored state as JSON")
    dump_parser.add_argument("--default", action="store_true", help="Dump the default state")
    dump_parser.add_argument("--output", "-o", help="Write to file instead of stdout")
    dump_parser.set_defaults(func=cmd_dump)

    # info command
    info_parser = subparsers.add_parser("info", help="Show storage info")
    info_parser.set_defaults(func=cmd_info)

    # clear command
    clear_parser = subparsers.add_parser("clear", help="Delete stored state")
    clear_parser.add_argument("--default", action="store_true", help="Clear the default state")
    clear_parser.set_defaults(func=cmd_clear)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    args.config = load_config(Path(args.config) if args.config else None)
    configure_logging(args.config.logging)
    args.func(args)


if __name__ == "__main__":
    main()
