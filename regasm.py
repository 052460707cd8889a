"""regasm entry point: run a register-machine program and print its message."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import ASMExtensionError, load_runtime_services
from interpreter import DEFAULT_HISTORY_SIZE, DEFAULT_WORD_SIZE, WORD_SIZES, ASMRuntimeError, Interpreter, TracebackFormatter
from lexer import ASMParseError


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register-machine assembler interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit register snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-steps", type=int, default=None, help="Abort after this many executed instructions")
    parser.add_argument("--max-call-depth", type=int, default=None, help="Abort when nested CALLs exceed this depth")
    parser.add_argument("--word-size", type=int, default=DEFAULT_WORD_SIZE, choices=sorted(WORD_SIZES), help="Register width in bits")
    parser.add_argument("--history-size", type=int, default=DEFAULT_HISTORY_SIZE, help="Number of state log entries to retain")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], help="Load an extension module (repeatable)")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        services = load_runtime_services(args.extensions)
    except ASMExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    try:
        interpreter = Interpreter(
            source=source_text,
            filename=filename,
            verbose=args.verbose,
            word_size=args.word_size,
            max_steps=args.max_steps,
            max_call_depth=args.max_call_depth,
            history_size=args.history_size,
            services=services,
        )
    except ValueError as error:
        print(f"ConfigError: {error}", file=sys.stderr)
        return 1

    try:
        output = interpreter.run()
    except ASMParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except ASMRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    print(output)
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
