"""CLI entrypoint for serving the novel_engine HTTP API."""

from __future__ import annotations

import argparse
import os

import uvicorn

from novel_engine.adapters.observability import configure_runtime_logging


def build_arg_parser() -> argparse.ArgumentParser:
    """Create CLI args for the API server process."""
    parser = argparse.ArgumentParser(description="Serve the novel_engine API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path for story persistence (default: work/local/novel_engine.db).",
    )
    parser.add_argument(
        "--provider",
        default="",
        help="Completion provider: draft, openai, xai, openrouter, openai-compatible, failing.",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse CLI flags and start uvicorn with the app factory."""
    configure_runtime_logging()
    parser = build_arg_parser()
    parsed = parser.parse_args(argv)
    db_path = str(parsed.db_path).strip()
    if db_path:
        os.environ["NOVEL_ENGINE_DB_PATH"] = db_path
    provider = str(parsed.provider).strip()
    if provider:
        os.environ["NOVEL_ENGINE_COMPLETION_PROVIDER"] = provider
    uvicorn.run(
        "novel_engine.api.app:create_app",
        factory=True,
        host=str(parsed.host),
        port=int(parsed.port),
        reload=bool(parsed.reload),
    )


if __name__ == "__main__":
    main()
