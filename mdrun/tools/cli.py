#!/usr/bin/env python3
"""
cli.py - Command line front end for mdrun

Runs the shell blocks of a Markdown document from a terminal. Every
subcommand works on one document; all blocks executed in one invocation
share that document's session, so a ``cd`` or ``export`` in an earlier
block is visible to later ones.

Line numbers on the command line are 1-based, as editors show them.

Usage:
    mdrun blocks README.md
    mdrun run README.md 14
    mdrun next README.md --after 14
    mdrun all README.md [--keep-going]
    mdrun results README.md [--json]
    mdrun show README.md <identity-prefix>
    mdrun resync README.md
    mdrun env README.md [NAME ...]
    mdrun serve [--port 5051]

Exit codes:
    0 - Success (every executed block succeeded)
    1 - A block failed, or the request could not be served
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable, Dict, List, Optional

from mdrun import __version__
from mdrun.runtime.async_utils import run_async_safely
from mdrun.runtime.errors import BlockNotFoundError, MdrunError
from mdrun.runtime.service import (
    RunService,
    latest_output_to_dict,
    run_all_summary_to_dict,
)
from mdrun.runtime.types import (
    CaptureStrategy,
    ExecutionOptions,
    ExecutionResult,
    block_to_dict,
    execution_result_to_dict,
    results_document_to_dict,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Output helpers
# =============================================================================


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _short(identity: Optional[str]) -> str:
    return (identity or "")[:10]


def _print_result(result: ExecutionResult) -> None:
    label = _short(result.identity)
    if result.timed_out:
        status = f"timed out after {result.duration_ms}ms"
    elif result.cancelled:
        status = "cancelled"
    elif result.ok:
        status = f"ok in {result.duration_ms}ms"
    else:
        status = f"failed ({result.exit_code}) in {result.duration_ms}ms"
    print(f"Block {label} {status}")
    if result.stdout:
        sys.stdout.write(result.stdout_text)
        if not result.stdout_text.endswith("\n"):
            sys.stdout.write("\n")
    if result.stderr:
        sys.stderr.write(result.stderr_text)
        if not result.stderr_text.endswith("\n"):
            sys.stderr.write("\n")
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)


def _options(args: argparse.Namespace) -> Optional[ExecutionOptions]:
    if not (args.timeout_ms or args.shell or args.strategy):
        return None
    return ExecutionOptions(
        shell_path=args.shell,
        timeout_ms=args.timeout_ms,
        capture_strategy=CaptureStrategy(args.strategy) if args.strategy else None,
    )


# =============================================================================
# Subcommands
# =============================================================================


def cmd_blocks(service: RunService, args: argparse.Namespace) -> int:
    blocks = service.blocks(service.read_source(args.doc))
    if args.json:
        _print_json([block_to_dict(b) for b in blocks])
        return 0
    latest = service.results.read_all_latest(args.doc)
    for block in blocks:
        entry = latest.get(block.block_id)
        if entry is None:
            status = "-"
        elif entry.ok:
            status = "ok"
        else:
            status = "err"
        first = block.content.split("\n", 1)[0]
        print(
            f"{block.start_line + 1:>5}-{block.end_line + 1:<5} {_short(block.block_id)} "
            f"{status:<3} {first}"
        )
    if not blocks:
        print("No shell blocks found")
    return 0


def cmd_run(service: RunService, args: argparse.Namespace) -> int:
    text = service.read_source(args.doc)
    try:
        result = run_async_safely(service.run_at(args.doc, text, args.line - 1, _options(args)))
    except BlockNotFoundError:
        print(f"Error: {args.doc}:{args.line} is not inside a shell block", file=sys.stderr)
        return 1
    if args.json:
        _print_json(execution_result_to_dict(result))
    else:
        _print_result(result)
    return 0 if result.ok else 1


def cmd_next(service: RunService, args: argparse.Namespace) -> int:
    text = service.read_source(args.doc)
    result = run_async_safely(service.run_next(args.doc, text, args.after - 1, force=args.force))
    if result is None:
        print("No next block to execute")
        return 0
    if args.json:
        _print_json(execution_result_to_dict(result))
    else:
        _print_result(result)
    return 0 if result.ok else 1


def cmd_all(service: RunService, args: argparse.Namespace) -> int:
    text = service.read_source(args.doc)
    summary = run_async_safely(
        service.run_all(args.doc, text, stop_on_error=not args.keep_going)
    )
    if args.json:
        _print_json(run_all_summary_to_dict(summary))
    else:
        for result in summary.results:
            _print_result(result)
        print(f"Run all complete: {summary.ok} ok, {summary.failed} failed")
        for problem in service.problems(args.doc):
            print(f"  {args.doc}:{problem.start_line}: {problem.text}")
    return 0 if summary.failed == 0 else 1


def cmd_results(service: RunService, args: argparse.Namespace) -> int:
    doc = service.results.read_document(args.doc)
    if args.json:
        _print_json(results_document_to_dict(doc))
        return 0
    if not doc.executions:
        print("No results stored")
        return 0
    for key, entry in sorted(doc.executions.items(), key=lambda kv: kv[1].timestamp):
        status = "ok" if entry.ok else ("timeout" if entry.timed_out else f"exit {entry.exit_code}")
        print(f"{_short(key)} {entry.timestamp} {status:<8} {entry.command.split(chr(10), 1)[0]}")
    return 0


def cmd_show(service: RunService, args: argparse.Namespace) -> int:
    latest = service.results.read_all_latest(args.doc)
    matches = [key for key in latest if key.startswith(args.identity)]
    if not matches:
        print(f"Error: no results found for block '{args.identity}'", file=sys.stderr)
        return 1
    if len(matches) > 1:
        print(f"Error: '{args.identity}' matches {len(matches)} blocks", file=sys.stderr)
        return 1
    output = service.latest_output(args.doc, matches[0])
    if output is None:
        print(f"Error: no results found for block '{args.identity}'", file=sys.stderr)
        return 1
    if args.json:
        _print_json(latest_output_to_dict(output))
        return 0
    entry = output.entry
    print(f"Command:  {entry.command.rstrip()}")
    print(f"CWD:      {entry.cwd}")
    print(f"Exit:     {entry.exit_code}{' (timed out)' if entry.timed_out else ''}")
    print(f"Duration: {entry.duration_ms}ms")
    print(f"When:     {entry.timestamp}")
    if output.stdout:
        print("--- stdout ---")
        print(output.stdout)
    if output.stderr:
        print("--- stderr ---")
        print(output.stderr)
    return 0


def cmd_resync(service: RunService, args: argparse.Namespace) -> int:
    removed = service.resync(args.doc, service.read_source(args.doc))
    print(f"Resynced results: removed {removed} stale entries")
    return 0


def cmd_env(service: RunService, args: argparse.Namespace) -> int:
    print(service.session_summary(args.doc))
    session = service.sessions.get_or_create(args.doc)
    for name in args.names:
        value = session.environment.get(name)
        print(f"{name}={value}" if value is not None else f"{name} is not set")
    return 0


def cmd_serve(service: RunService, args: argparse.Namespace) -> int:
    import uvicorn

    from mdrun.api.server import create_app

    app = create_app(service=service, enable_cors=not args.no_cors)
    print(f"Starting mdrun API server at http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


COMMANDS: Dict[str, Callable[[RunService, argparse.Namespace], int]] = {
    "blocks": cmd_blocks,
    "run": cmd_run,
    "next": cmd_next,
    "all": cmd_all,
    "results": cmd_results,
    "show": cmd_show,
    "resync": cmd_resync,
    "env": cmd_env,
    "serve": cmd_serve,
}


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mdrun",
        description="Run shell code blocks embedded in Markdown documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Results are stored next to the document in <doc>.result.json, with large
or binary output in <doc>.results/. Settings come from mdrun/config/runtime.yaml,
the file named by MDRUN_CONFIG, and MDRUN_* environment variables.
        """,
    )
    parser.add_argument("--version", action="version", version=f"mdrun {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    exec_opts = argparse.ArgumentParser(add_help=False)
    exec_opts.add_argument("--timeout-ms", type=int, default=None, help="Per-block timeout")
    exec_opts.add_argument("--shell", default=None, help="Interpreter to run blocks with")
    exec_opts.add_argument(
        "--strategy",
        choices=[s.value for s in CaptureStrategy],
        default=None,
        help="How environment changes are captured",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("blocks", parents=[common], help="List runnable blocks")
    p.add_argument("doc")

    p = sub.add_parser("run", parents=[common, exec_opts], help="Run the block at a line")
    p.add_argument("doc")
    p.add_argument("line", type=int, help="1-based line inside the block")

    p = sub.add_parser("next", parents=[common], help="Run the next block without a result")
    p.add_argument("doc")
    p.add_argument("--after", type=int, default=0, help="1-based line to search after")
    p.add_argument("--force", action="store_true", help="Ignore stored results")

    p = sub.add_parser("all", parents=[common], help="Run every block in order")
    p.add_argument("doc")
    p.add_argument("--keep-going", action="store_true", help="Do not stop at the first failure")

    p = sub.add_parser("results", parents=[common], help="List stored results")
    p.add_argument("doc")

    p = sub.add_parser("show", parents=[common], help="Show the latest output of a block")
    p.add_argument("doc")
    p.add_argument("identity", help="Block identity or unique prefix")

    p = sub.add_parser("resync", help="Drop results of blocks no longer in the document")
    p.add_argument("doc")

    p = sub.add_parser("env", help="Show the session summary")
    p.add_argument("doc")
    p.add_argument("names", nargs="*", help="Variables to print")

    p = sub.add_parser("serve", help="Start the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=5051)
    p.add_argument("--no-cors", action="store_true", help="Disable CORS")

    return parser


def main(argv: Optional[List[str]] = None, service: Optional[RunService] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    service = service or RunService.from_config()
    handler = COMMANDS[args.command]
    try:
        return handler(service, args)
    except FileNotFoundError as e:
        print(f"Error: {e.filename or e}: no such file", file=sys.stderr)
        return 1
    except (MdrunError, OSError, UnicodeDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
