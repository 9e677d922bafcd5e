"""
Command-line runner for TinyScript program documents.

Usage:
    python tinyrun.py PROGRAM.yaml [ARGS ...] [--entry Class.method] [--max-call-depth N] [--report json|yaml]

Exit status: 0 success, 1 failed assert, 2 runtime error, 3 program could not be loaded.
"""

import argparse
import sys
from pathlib import Path

from tiny.tiny_runtime import ScriptRunner, parse_scalar
from tiny.tiny_printer import Printer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tinyrun",
        description="Run a TinyScript program document (parser output stored as JSON or YAML).",
    )
    parser.add_argument("program", help="path to a .json, .yaml or .yml program document")
    parser.add_argument("args", nargs="*", help="entry point arguments (coerced to int, float, true/false or string)")
    parser.add_argument("--entry", default=None, help="entry point as Class.method or function (default: Test.main)")
    parser.add_argument("--max-call-depth", type=int, default=None, help="maximum call depth before StackOverflow")
    parser.add_argument("--report", choices=("json", "yaml"), default=None,
                        help="print a structured run report instead of the plain result")
    return parser


def _format_for_path(path: Path):
    match path.suffix.lower():
        case ".json":
            return "json"
        case ".yaml" | ".yml":
            return "yaml"
        case _:
            # Let the loader sniff the content.
            return None


def run_program_file(file_path: str, args=None, entry=None, max_call_depth=None, report=None) -> int:
    """Run a program document non-interactively and return the exit status."""
    runner = ScriptRunner(entry=entry, max_call_depth=max_call_depth)
    printer = Printer()
    p = Path(file_path)
    try:
        data = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        return 3
    result = runner.handle_document(data, fmt=_format_for_path(p), args=[parse_scalar(a) for a in args or []])
    # Print side effects (from `print`)
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))
    if report:
        print(result.serialize(report))
    elif result.status == 'error':
        print(result.format_error(), file=sys.stderr)
    elif result.value is not None:
        print(printer.pformat(result.value))
    return result.exit_code


def main(argv=None) -> int:
    # Entry arguments may follow options, e.g. `prog.yaml --entry Test.check 56`.
    ns = build_parser().parse_intermixed_args(argv)
    return run_program_file(ns.program, ns.args, entry=ns.entry, max_call_depth=ns.max_call_depth, report=ns.report)


if __name__ == "__main__":
    raise SystemExit(main())
