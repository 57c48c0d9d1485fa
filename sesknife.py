"""sesknife entry point."""
from __future__ import annotations
import argparse
import logging
import sys
from typing import List, Optional, Tuple

from engine import SearchEngine
from extensions import SesExtensionError, load_runtime_services
from lexer import SesError, SesParseError, SigilProfile


LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _define(text: str) -> Tuple[str, str]:
    name, eq, value = text.partition("=")
    if not eq or not name:
        raise argparse.ArgumentTypeError(f"expected name=value, got '{text}'")
    return name, value


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sesknife", description="Run a search engine script on text files")
    parser.add_argument("script", help="Script file path, or literal script text with --source")
    parser.add_argument("inputs", nargs="*", help="Files loaded into ~_main, one run per file")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat script argument as literal source text")
    parser.add_argument("-l", "--log-level", choices=sorted(LOG_LEVELS), default="info", help="Logging threshold")
    parser.add_argument("-v", "--verbose", action="store_true", help="Emit scope snapshots in tracebacks")
    parser.add_argument("-t", "--trace", action="store_true", help="Trace executed statements to stderr")
    parser.add_argument("-D", "--define", dest="defines", action="append", type=_define, default=[], metavar="NAME=VALUE", help="Predefine a variable")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load an extension module or .sesx list")
    parser.add_argument("--bang", action="store_true", help="Use !(name) and !buffer references")
    parser.add_argument("--seed", type=int, default=None, help="Seed for math.random")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_argument_parser().parse_args(argv)
    logging.basicConfig(level=LOG_LEVELS[args.log_level], format="%(levelname)s %(message)s")
    logger = logging.getLogger("sesknife")

    try:
        services = load_runtime_services(args.extensions)
    except SesExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    engine = SearchEngine(
        logger,
        profile=SigilProfile.BANG if args.bang else SigilProfile.DOLLAR,
        seed=args.seed,
        services=services,
        verbose=args.verbose,
    )
    try:
        if args.source_mode:
            engine.load_script_text("main", args.script, "<string>")
        else:
            engine.load_script("main", args.script)
    except SesParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Failed to read {args.script}: {exc}", file=sys.stderr)
        return 1

    for name, value in args.defines:
        try:
            engine.define_variable(name, value)
        except SesError as error:
            print(f"Error: {error}", file=sys.stderr)
            return 1
    if args.trace:
        engine.set_trace("-")

    inputs: List[Optional[str]] = list(args.inputs) or [None]
    code = 0
    try:
        for path in inputs:
            try:
                code = engine.test_and_run(input_file=path)
            except OSError as exc:
                print(f"Failed to read {path}: {exc}", file=sys.stderr)
                return 1
            if engine.last_error is not None:
                print(engine.format_traceback(), file=sys.stderr)
                if args.traceback_json:
                    print(engine.format_traceback(as_json=True), file=sys.stderr)
                return code
    finally:
        engine.close()
    return code


def main() -> int:
    return run_cli()


if __name__ == "__main__":
    raise SystemExit(main())
