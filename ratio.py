"""RATIO entry point."""
from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from interpreter import Interpreter, RatioFatalError, TracebackFormatter
from lexer import RatioParseError, describe_token, scan
from parser import format_ast


def dump_tokens(source_text: str, filename: str) -> None:
    for token in scan(source_text, filename):
        print(describe_token(token))


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="RATIO reference interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--tokens", action="store_true", help="Print the token stream and exit")
    parser.add_argument("--ast", action="store_true", help="Print the parsed syntax tree and exit")
    args = parser.parse_args(argv)

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

    if args.tokens:
        dump_tokens(source_text, filename)
        return 0

    interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose)
    if args.ast:
        try:
            program = interpreter.parse()
        except RatioParseError as error:
            print(f"ParseError: {error}", file=sys.stderr)
            return 1
        print(format_ast(program))
        return 0

    try:
        interpreter.run()
    except RatioParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except RatioFatalError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
