"""
TROUBLESHOOT MAIN - Entry Point and CLI

Commands:
    init      - Create the database and the global start node (--demo seeds the brush tree)
    issues    - List issues with their activation state
    validate  - Report unfinished questions in a category
    activate  - Publish (or --off: unpublish) a category
    export    - Write one category (or every category) as JSON issue documents
    import    - Load issue documents from a JSON file
    walk      - Run a troubleshooting session in the terminal

Usage:
    # Fresh database with the demo tree
    python main.py init --demo

    # Check and publish an issue
    python main.py validate brush
    python main.py activate brush --force

    # Move issues between databases
    python main.py export --output brush.json brush
    python main.py --db other.db import brush.json --mode rename

    # Walk a tree interactively
    python main.py walk brush

The database path comes from config/troubleshoot.toml, TROUBLESHOOT_DB_PATH,
or --db (highest precedence).
"""
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent))


def _engine(args, seed_demo: bool = False):
    from core.engine import TroubleshootEngine
    from infrastructure.config import get_config, configure_logging

    config = get_config()
    if args.db:
        config.storage.db_path = args.db
    if args.verbose:
        config.logging.level = "DEBUG"
    configure_logging(config)
    return TroubleshootEngine.from_config(config, seed_demo=seed_demo)


def cmd_init(args):
    """Handle init command - create schema and the global start node."""
    engine = _engine(args, seed_demo=args.demo)
    try:
        print(f"Database ready: {engine.store.db_path}")
        print(f"  Nodes: {len(engine.store)}")
        print(f"  Issues: {len(engine.list_issues())}")
    finally:
        engine.close()


def cmd_issues(args):
    """Handle issues command - one line per issue."""
    engine = _engine(args)
    try:
        issues = engine.list_issues()
        if not issues:
            print("No issues found.")
            return
        for issue in issues:
            state = "active" if issue.is_active else "draft"
            print(f"{issue.category:<20} {state:<7} {issue.question_count:>3} question(s)  {issue.name}")
    finally:
        engine.close()


def cmd_validate(args):
    """Handle validate command - exit 1 when the category has unfinished questions."""
    from core.graph_db import NotFoundError

    engine = _engine(args)
    try:
        try:
            report = engine.validate_category(args.category)
        except NotFoundError as e:
            print(f"Error: {e}")
            sys.exit(1)

        print(f"Checked {report.visited} reachable node(s) in '{args.category}'")
        if report.ok:
            print("OK: every reachable question has an answer")
            return
        print(f"{len(report.incomplete_nodes)} question(s) without answers:")
        for text in report.incomplete_nodes:
            print(f"  - {text}")
        sys.exit(1)
    finally:
        engine.close()


def cmd_activate(args):
    """Handle activate command - publish or unpublish a category."""
    from core.graph_db import GraphError

    engine = _engine(args)
    try:
        try:
            issue = engine.set_activation(args.category, not args.off, force_activate=args.force)
        except GraphError as e:
            print(f"Activation failed: {e}")
            sys.exit(1)
        print(f"{issue.category}: {'active' if issue.is_active else 'draft'}")
    finally:
        engine.close()


def cmd_export(args):
    """Handle export command - write issue documents as JSON."""
    from core.graph_db import NotFoundError
    from core.import_export import encode_document

    engine = _engine(args)
    try:
        try:
            if args.category:
                payload = engine.export_category(args.category)
                count = 1
            else:
                payload = engine.export_all()
                count = len(payload)
        except NotFoundError as e:
            print(f"Export failed: {e}")
            sys.exit(1)

        data = encode_document(payload)
        if args.output:
            output = Path(args.output)
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(data)
            print(f"Exported {count} issue(s) to {output}")
        else:
            sys.stdout.write(data.decode("utf-8") + "\n")
    finally:
        engine.close()


def cmd_import(args):
    """Handle import command - load one document or a list of documents."""
    from core.graph_db import ValidationError
    from core.import_export import decode_documents

    try:
        docs = decode_documents(Path(args.file).read_bytes())
    except (OSError, ValidationError) as e:
        print(f"Import failed: {e}")
        sys.exit(1)

    engine = _engine(args)
    try:
        result = engine.import_many(docs, mode=args.mode)
    finally:
        engine.close()

    for success in result.success:
        print(f"Imported {success.category}: {success.nodes_count} nodes, "
              f"{success.connections_count} connections")
    for error in result.errors:
        ref = f" [{error.ref}]" if error.ref else ""
        print(f"  {error.category} {error.item_kind}{ref}: {error.error}")
    if not result.success:
        sys.exit(1)


def cmd_walk(args):
    """Handle walk command - interactive session on stdin/stdout."""
    from core.graph_db import NotFoundError

    engine = _engine(args)
    try:
        try:
            view = engine.start_session(args.category, tech_identifier=args.tech)
        except NotFoundError as e:
            print(f"Error: {e}")
            sys.exit(1)

        while not view.is_conclusion:
            print(f"\n{view.node.text}")
            if not view.options:
                print("(This question has no answers yet.)")
                engine.mark_abandoned(view.session_id)
                return
            for i, option in enumerate(view.options, 1):
                print(f"  {i}. {option.label}")

            try:
                choice = input("> ").strip()
            except EOFError:
                choice = "q"
            if choice.lower() in ("q", "quit"):
                engine.mark_abandoned(view.session_id)
                print("Session abandoned.")
                return
            if not choice.isdigit() or not 1 <= int(choice) <= len(view.options):
                print(f"Pick a number between 1 and {len(view.options)}")
                continue
            view = engine.submit_answer(view.session_id, view.options[int(choice) - 1].connection_id)

        print(f"\n{view.conclusion_text}")
    finally:
        engine.close()


def main(argv: Optional[List[str]] = None):
    """Main entry point with subcommands."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Troubleshoot - Graph-Backed Decision Trees",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", help="SQLite database path (overrides configuration)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init command
    init_parser = subparsers.add_parser("init", help="Create database and start node")
    init_parser.add_argument("--demo", action="store_true", help="Seed the demo brush tree")
    init_parser.set_defaults(func=cmd_init)

    # issues command
    issues_parser = subparsers.add_parser("issues", help="List issues")
    issues_parser.set_defaults(func=cmd_issues)

    # validate command
    validate_parser = subparsers.add_parser("validate", help="Validate a category")
    validate_parser.add_argument("category")
    validate_parser.set_defaults(func=cmd_validate)

    # activate command
    activate_parser = subparsers.add_parser("activate", help="Publish or unpublish a category")
    activate_parser.add_argument("category")
    activate_parser.add_argument("--off", action="store_true", help="Unpublish instead")
    activate_parser.add_argument("--force", action="store_true", help="Publish even if incomplete")
    activate_parser.set_defaults(func=cmd_activate)

    # export command
    export_parser = subparsers.add_parser("export", help="Export issues as JSON")
    export_parser.add_argument("category", nargs="?", help="Category (default: every issue)")
    export_parser.add_argument("--output", "-o", help="Output file (default: stdout)")
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser("import", help="Import issues from JSON")
    import_parser.add_argument("file", help="Path to a JSON issue document (or list)")
    import_parser.add_argument("--mode", choices=["reject", "replace", "rename"], default="reject",
                               help="What to do when the category already exists")
    import_parser.set_defaults(func=cmd_import)

    # walk command
    walk_parser = subparsers.add_parser("walk", help="Run a session in the terminal")
    walk_parser.add_argument("category", nargs="?", help="Start at this category (default: selector)")
    walk_parser.add_argument("--tech", help="Technician identifier recorded on the session")
    walk_parser.set_defaults(func=cmd_walk)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
