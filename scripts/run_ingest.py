"""CLI entrypoint for ingesting manuscript files and running continuity checks."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from continuity_engine.config import AppConfig  # noqa: E402
from continuity_engine.errors import ContinuityEngineError  # noqa: E402
from continuity_engine.pipeline import ContinuityPipeline  # noqa: E402
from continuity_engine.providers import build_provider  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest manuscript files and report continuity issues.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML config (defaults to <root>/continuity.yaml when present).",
    )
    parser.add_argument(
        "--root",
        type=str,
        default=".",
        help="Project root directory.",
    )
    parser.add_argument(
        "--input",
        action="append",
        required=True,
        help="Manuscript file to ingest (repeatable).",
    )
    parser.add_argument(
        "--show-issues",
        action="store_true",
        help="Print open issues after processing.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    root = str(Path(args.root).resolve())
    config = AppConfig.from_yaml(args.config) if args.config else AppConfig.for_project(root)
    api_key = os.getenv("CONTINUITY_LLM_API_KEY") or os.getenv("GEMINI_API_KEY")
    pipeline = ContinuityPipeline(config, provider=build_provider(config.llm, api_key))

    exit_code = 0
    try:
        project_id = None
        for input_path in args.input:
            try:
                stats = pipeline.process_document(root, input_path)
            except ContinuityEngineError as exc:
                print(f"{input_path}: {exc}", file=sys.stderr)
                exit_code = 1
                continue
            project_id = stats["project_id"]
            print(f"Processed {input_path}")
            for key, value in stats.items():
                print(f"  {key}: {value}")

        if args.show_issues and project_id:
            for issue in pipeline.list_issues(project_id):
                print(f"[{issue.severity}] {issue.type}: {issue.title}")
                print(f"    {issue.description}")
    finally:
        pipeline.close()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
