"""ABAP-Lite entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from interpreter import DEFAULT_MAX_ITERATIONS, ExecutionResult, Interpreter, InterpreterConfig


def _print_result(result: ExecutionResult) -> None:
    if result.output:
        print(result.output)
    for message in result.diagnostics:
        print(message, file=sys.stderr)


def run_repl(config: InterpreterConfig) -> int:
    print("\x1b[38;2;153;221;255mABAP-Lite\033[0m REPL. Enter statements, blank line to run buffer.")
    buffer: List[str] = []

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m "
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        if line.strip() == "":
            if buffer:
                source_text = "\n".join(buffer)
                buffer.clear()
                # Each run starts from an empty environment.
                _print_result(Interpreter(config).execute(source_text))
            continue

        buffer.append(line)

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="ABAP-Lite reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record env snapshots in the step trace")
    parser.add_argument("--trace-json", action="store_true", help="Also emit the step trace as JSON")
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=DEFAULT_MAX_ITERATIONS,
        help=f"Loop iteration budget per run (default {DEFAULT_MAX_ITERATIONS})",
    )
    args = parser.parse_args(argv)

    if args.max_iterations < 0:
        print("--max-iterations must be non-negative", file=sys.stderr)
        return 1
    config = InterpreterConfig(verbose=args.verbose, max_iterations=args.max_iterations)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(config)

    if args.source_mode:
        source_text = args.program
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(config)
    result = interpreter.execute(source_text)
    _print_result(result)
    if args.trace_json:
        print(interpreter.logger.to_json(), file=sys.stderr)
    return 1 if result.diagnostics else 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
