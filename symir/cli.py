#!/usr/bin/env python3
"""
CLI entrypoint for the symir symbolic executor.

Usage:
    symir <program.json> [--entry NAME] [--symbolic] [--input-len N]
                         [--config FILE] [--max-paths N] [--verbose]

Prints one line per explored path: the concrete input in hex and the outcome.

Returns:
    0: every explored path succeeded
    1: at least one path failed
    3: Error (file not found, malformed program, bad entry point, etc.)
"""

import argparse
import logging
import sys
from pathlib import Path

from .config import ExecutorConfig
from .dse.executor import CollectingSink, Executor
from .errors import EvalError
from .frontend.loader import load_program


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="symir: symbolic execution of a MIR-like IR with a Z3 backend"
    )
    parser.add_argument("program", type=Path, help="JSON program file to execute")
    parser.add_argument("--entry", default="main", help="Entry function name (default: main)")
    parser.add_argument(
        "--symbolic",
        action="store_true",
        help="Treat the entry as fn(&[u8]) and bind its argument to a fully symbolic buffer",
    )
    parser.add_argument("--input-len", type=int, help="Length of the symbolic input buffer")
    parser.add_argument("--config", type=Path, help="YAML configuration file")
    parser.add_argument("--max-paths", type=int, help="Stop after this many finished paths")
    parser.add_argument("--verbose", action="store_true", help="Verbose output")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.program.exists():
        print(f"Error: file not found: {args.program}", file=sys.stderr)
        return 3

    try:
        config = ExecutorConfig.load(args.config) if args.config else ExecutorConfig()
        if args.input_len is not None:
            config.symbolic_input_len = args.input_len
        program = load_program(args.program)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 3

    sink = CollectingSink(args.max_paths)
    try:
        if args.symbolic:
            executor = Executor.new_symbolic(program, args.entry, config, sink)
        else:
            executor = Executor.new_main(program, args.entry, config, sink)
    except EvalError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 3

    stats = executor.run()

    for complete in sink.results:
        line = f"{complete.input.hex() or '-'}\t{complete.result}"
        if complete.leaked_bytes:
            line += f"\t(leaked {complete.leaked_bytes} bytes)"
        print(line)
        if args.verbose and complete.result.error is not None:
            for frame in complete.result.error.stack:
                print(f"    {frame}")

    if args.verbose:
        print(
            f"{stats.paths_completed} paths, {stats.failures} failures, "
            f"{stats.forks} forks, {stats.steps} steps",
            file=sys.stderr,
        )
    return 1 if sink.failures else 0


if __name__ == "__main__":
    sys.exit(main())
