#!/usr/bin/env python3
"""Example: drive the loop from Python instead of the ``coralph`` command.

Usage:
    python examples/run_loop.py /path/to/repo --iterations 5 --agent claude_code
"""

from __future__ import annotations

import argparse
import logging
import sys

from coralph.__main__ import build_runner
from coralph.config import LoopOptions
from coralph.console_output import ConsoleOutput
from coralph.loop import LoopController


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the Coralph loop once over a repository.")
    parser.add_argument("repo", help="Path to the target repo (must contain prompt.md)")
    parser.add_argument("--iterations", type=int, default=5, help="Max iterations (default 5)")
    parser.add_argument("--agent", default="copilot", help="copilot | claude_code")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )

    options = LoopOptions(
        working_dir=args.repo,
        max_iterations=args.iterations,
        agent=args.agent,
        commit_progress=False,
    )
    controller = LoopController(options, build_runner(options), sink=ConsoleOutput())
    result = controller.run()

    print(f"\nDone! {result.iterations} iterations, stop reason: {result.stop_reason.value}")
    if result.signal:
        print(f"Terminal signal: {result.signal}")
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
