"""pipa command-line entry point."""

from __future__ import annotations
import argparse
import sys
from typing import Dict, List, Optional, Sequence, Tuple

from engine import render, split_array
from extensions import PipaExtensionError, load_runtime_services
from vm import PipaRuntimeError, TracebackFormatter

DEFAULT_LABEL = "index.pipa"


def _split_assignment(raw: str, flag: str) -> Tuple[str, str]:
    name, sep, value = raw.partition("=")
    if not sep or not name:
        raise ValueError(f"{flag} expects NAME=VALUE, got {raw!r}")
    return name, value


def _collect_environment(args: argparse.Namespace) -> Tuple[Dict[str, str], Dict[str, List[str]]]:
    variables: Dict[str, str] = {}
    arrays: Dict[str, List[str]] = {}
    for raw in args.var:
        name, value = _split_assignment(raw, "--var")
        variables[name] = value
    for raw in args.array:
        name, value = _split_assignment(raw, "--array")
        # Shells make embedded newlines awkward; accept a literal "\n" too.
        arrays[name] = split_array(value.replace("\\n", "\n"))
    for raw in args.array_file:
        name, path = _split_assignment(raw, "--array-file")
        with open(path, "r", encoding="utf-8") as handle:
            arrays[name] = split_array(handle.read())
    return variables, arrays


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="pipa template engine")
    parser.add_argument("program", nargs="?", help="Template file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("--var", action="append", default=[], metavar="NAME=VALUE", help="Define a scalar variable")
    parser.add_argument("--array", action="append", default=[], metavar="NAME=VALUE", help="Define an array; items are separated by newlines")
    parser.add_argument("--array-file", action="append", default=[], metavar="NAME=PATH", help="Define an array from the lines of a file")
    parser.add_argument("--label", help="File label used in diagnostics")
    parser.add_argument("--console", action="store_true", help="Dump variable/array state and the IR to stderr")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension (.py) or extension list (.pipax)")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit binding snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback for runtime errors")
    args = parser.parse_args(argv)

    if args.program is None:
        print("a template file (or -source TEXT) is required", file=sys.stderr)
        return 1

    if args.source_mode:
        source_text = args.program
        label = args.label or DEFAULT_LABEL
    else:
        label = args.label or args.program
        try:
            with open(args.program, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {args.program}: {exc}", file=sys.stderr)
            return 1

    try:
        variables, arrays = _collect_environment(args)
    except (OSError, ValueError) as exc:
        print(f"Invalid environment: {exc}", file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.ext)
    except PipaExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    result = render(source_text, variables, arrays, services=services, verbose=args.verbose)
    sys.stdout.write(result.output)
    sys.stdout.flush()

    if args.console:
        sys.stderr.write(result.console())

    if result.ok:
        return 0

    result.write_diagnostic(sys.stderr.write, label, source_text)
    if isinstance(result.error, PipaRuntimeError) and result.vm is not None:
        formatter = TracebackFormatter(result.vm, label, source_text)
        if args.verbose:
            print(formatter.format_text(result.error, verbose=True), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(result.error), file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(run_cli())
