"""Entry point for `python -m webgen_factory` and the `webgen` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from webgen_factory.errors import OrchestratorError
from webgen_factory.pipeline import WebAppOrchestrator, read_tree
from webgen_factory.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate, amend and promote React web apps")
    parser.add_argument("--project-id", default=None, help="Project to operate on (default: WEBGEN_PROJECT_ID)")
    parser.add_argument(
        "--workspace-root",
        type=Path,
        default=None,
        help="Directory the compiler and build commands run in (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate", help="Plan and generate a new version from a request")
    generate.add_argument("--request-file", type=Path, default=None, help="Path to a markdown request")
    generate.add_argument("--request-text", default=None, help="Inline request text (mutually exclusive with request file)")
    generate.add_argument(
        "--scaffold-dir",
        type=Path,
        default=None,
        help="Project template whose files seed the staged tree instead of the current version",
    )

    chat = commands.add_parser("chat", help="Apply a conversational change to the current version")
    chat.add_argument("message", help="Change request")

    query = commands.add_parser("query", help="List the files most relevant to a query")
    query.add_argument("text")
    query.add_argument("-k", type=int, default=None, help="Number of semantic hits (default: WEBGEN_CONTEXT_TOP_K)")

    rollback = commands.add_parser("rollback", help="Make an earlier successful version current")
    rollback.add_argument("version", type=int)
    return parser.parse_args(argv)


def load_request(*, request_file: Path | None, request_text: str | None) -> str:
    if request_text is not None and request_file is not None:
        raise ValueError("request_text cannot be combined with request_file input")
    if request_text is not None:
        trimmed = request_text.strip()
        if not trimmed:
            raise ValueError("request_text must be non-empty")
        return trimmed
    if request_file is None:
        raise ValueError("Either --request-text or --request-file is required")
    if not request_file.is_file():
        raise FileNotFoundError(f"Requested input file does not exist: {request_file}")
    return request_file.read_text(encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Set workspace root before constructing any settings objects.
    if args.workspace_root is not None:
        workspace_root = args.workspace_root.resolve()
        workspace_root.mkdir(parents=True, exist_ok=True)
        os.environ["WEBGEN_WORKSPACE_ROOT"] = str(workspace_root)

    try:
        settings = RuntimeSettings.from_env()
        request = None
        scaffold = None
        if args.command == "generate":
            request = load_request(request_file=args.request_file, request_text=args.request_text)
            if args.scaffold_dir is not None:
                scaffold = read_tree(args.scaffold_dir)
    except (OSError, ValueError) as exc:
        logging.error("Unable to load input: %s", exc)
        return 1

    orchestrator = WebAppOrchestrator.from_settings(settings)
    try:
        if args.command == "generate":
            report = orchestrator.generate(request, project_id=args.project_id, base_files=scaffold)
            print(f"outcome={report.outcome.value}")
            print(json.dumps(report.model_dump(mode="json"), indent=2, default=str))
            return 0 if report.failure_reason is None else 1

        if args.command == "chat":
            outcome = orchestrator.chat(args.message, project_id=args.project_id)
            print(outcome.step.response_text)
            if outcome.build is not None:
                print(f"promoted={outcome.build.record.build_id} version={outcome.build.record.version}")
            if outcome.failure:
                print(f"failure={outcome.failure}")
                return 1
            return 0 if outcome.step.error is None else 1

        if args.command == "query":
            if orchestrator.context_index is None:
                logging.error("No context index configured")
                return 1
            project = args.project_id or settings.project_id
            for path in orchestrator.context_index.query(project, args.text, args.k or settings.context_top_k):
                print(path)
            return 0

        record = orchestrator.rollback(args.version, project_id=args.project_id)
        print(f"current={record.build_id} version={record.version}")
        return 0
    except OrchestratorError as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("%s failed: %s", args.command, exc)
        return 1
    finally:
        orchestrator.close()


if __name__ == "__main__":
    raise SystemExit(main())
