"""CLI for seeding and listing novel templates."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from novel_engine.adapters.observability import configure_runtime_logging
from novel_engine.adapters.sqlite_template_store import SQLiteTemplateStore
from novel_engine.api.contracts import load_template_json

DEFAULT_DB_PATH = Path("work/local/novel_engine.db")

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    """Define subcommands for template import and listing."""
    parser = argparse.ArgumentParser(description="Import or list novel templates.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: $NOVEL_ENGINE_DB_PATH or work/local/novel_engine.db).",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    import_parser = subcommands.add_parser("import", help="Validate and store template JSON files.")
    import_parser.add_argument("paths", nargs="+", help="Template JSON files.")

    subcommands.add_parser("list", help="Print stored templates.")
    return parser


def _db_path(raw: str) -> Path:
    if raw.strip():
        return Path(raw.strip())
    env_value = os.environ.get("NOVEL_ENGINE_DB_PATH", "").strip()
    return Path(env_value) if env_value else DEFAULT_DB_PATH


def main(argv: list[str] | None = None) -> int:
    """Run the selected subcommand and return a process exit code."""
    configure_runtime_logging()
    parsed = build_arg_parser().parse_args(argv)
    store = SQLiteTemplateStore(db_path=_db_path(str(parsed.db_path)))

    if parsed.command == "list":
        for template in store.list_templates():
            print(
                f"{template.template_id}\t{template.title}\t"
                f"{template.total_scenes} scenes\t{len(template.choice_points)} choice points"
            )
        return 0

    failures = 0
    for raw_path in parsed.paths:
        path = Path(raw_path)
        try:
            blueprint = load_template_json(path)
        except (OSError, ValidationError) as exc:
            failures += 1
            logger.error("template.import_failed path=%s error=%s", path, exc)
            print(f"Rejected {path}: {exc}")
            continue
        template = store.save_template(blueprint.to_domain())
        print(f"Imported template: {template.template_id} ({path})")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
