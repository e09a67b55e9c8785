"""CLI entrypoint for Coralph."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

from coralph import __version__
from coralph.agent_runner import AgentRunner, create_agent, get_agent_class, list_agents
from coralph.claude_code import ClaudeCodeRunner
from coralph.config import ConfigError, LoopOptions, load_options
from coralph.console_output import ConsoleOutput, LoopEventSink
from coralph.copilot_cli import CopilotCliRunner
from coralph.event_stream import EventStreamSink
from coralph.init_workflow import run_init
from coralph.loop import LoopController
from coralph.preflight import PreflightReport, agent_binary, build_preflight_report

logger = logging.getLogger("coralph")

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
LOG_DIR = Path(".coralph") / "logs"
LOG_FILE_NAME = "coralph.log"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

_COMMANDS = ("run", "init", "doctor")

#: Constructor keyword that carries the executable path for each runner.
_BINARY_KWARGS: dict[type[AgentRunner], str] = {
    ClaudeCodeRunner: "claude_binary",
    CopilotCliRunner: "copilot_binary",
}


def _load_dotenv() -> None:
    """Load .env from the working directory or its parent."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _add_common_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--working-dir", type=str, default=None, help="Repository to work in.")
    p.add_argument("--config", type=str, default=None, help="Path to coralph.config.json.")
    p.add_argument("--prompt-file", type=str, default=None)
    p.add_argument("--progress-file", type=str, default=None)
    p.add_argument("--issues-file", type=str, default=None)
    p.add_argument("--backlog-file", type=str, default=None)
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")


def _add_run_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--max-iterations", type=int, default=None, help="Iteration budget.")
    p.add_argument("--model", type=str, default=None, help="Model passed to the assistant.")
    p.add_argument("--agent", type=str, default=None, help="copilot or claude_code.")
    p.add_argument("--agent-binary", type=str, default=None, help="Assistant executable.")
    p.add_argument("--timeout", type=int, default=None, help="Per-turn inactivity timeout.")
    p.add_argument(
        "--refresh-issues",
        action="store_true",
        default=None,
        help="Fetch open issues with 'gh' before the loop starts.",
    )
    p.add_argument("--repo", type=str, default=None, help="GitHub repository (owner/name).")
    p.add_argument(
        "--pr-mode",
        action="store_true",
        default=None,
        help="Work through pull requests and include PR feedback in the prompt.",
    )
    p.add_argument(
        "--no-commit",
        action="store_true",
        help="Do not commit the progress file when the loop finishes.",
    )
    p.add_argument(
        "--stream-events",
        action="store_true",
        default=None,
        help="Write JSONL events to stdout instead of console text.",
    )
    p.add_argument(
        "--watch-tasks",
        action="store_true",
        default=None,
        help="Report backlog edits while a turn is running.",
    )
    p.add_argument("--skip-preflight", action="store_true", help="Skip readiness checks.")


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser."""
    p = argparse.ArgumentParser(
        prog="coralph",
        description="Coralph - run a coding assistant in a loop over your GitHub issues.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run the loop (default command).")
    _add_common_arguments(run_p)
    _add_run_arguments(run_p)

    init_p = sub.add_parser("init", help="Create prompt.md, sample issues and .gitignore entries.")
    _add_common_arguments(init_p)
    init_p.add_argument("--force", action="store_true", help="Overwrite existing files.")

    doctor_p = sub.add_parser("doctor", help="Check that the loop is ready to run.")
    _add_common_arguments(doctor_p)
    _add_run_arguments(doctor_p)
    return p


def _normalize_argv(argv: list[str]) -> list[str]:
    """Make ``run`` the command when none is given."""
    if argv and (argv[0] in _COMMANDS or argv[0] in ("-h", "--help", "--version")):
        return argv
    return ["run", *argv]


def _overrides(args: argparse.Namespace) -> dict[str, object]:
    overrides: dict[str, object] = {
        "working_dir": args.working_dir,
        "prompt_file": args.prompt_file,
        "progress_file": args.progress_file,
        "issues_file": args.issues_file,
        "backlog_file": args.backlog_file,
    }
    if args.command in ("run", "doctor"):
        overrides.update(
            max_iterations=args.max_iterations,
            model=args.model,
            agent=args.agent,
            agent_binary=args.agent_binary,
            timeout_seconds=args.timeout,
            refresh_issues=args.refresh_issues,
            repo=args.repo,
            pr_mode=args.pr_mode,
            commit_progress=False if args.no_commit else None,
            stream_events=args.stream_events,
            watch_tasks=args.watch_tasks,
        )
    return overrides


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _configure_logging(
    verbose: bool, options: LoopOptions | None, *, quiet: bool
) -> logging.Handler | None:
    """Console logging on stderr plus a log file under the working directory."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    if quiet:
        # stdout carries the event stream; keep stderr to problems only.
        for existing in logging.getLogger().handlers:
            existing.setLevel(logging.WARNING)
    if options is None:
        return None
    log_path = options.resolve(str(LOG_DIR / LOG_FILE_NAME))
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not open log file %s: %s", log_path, exc)
        return None
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.getLogger().addHandler(handler)
    return handler


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def build_runner(options: LoopOptions) -> AgentRunner:
    """Instantiate the configured assistant runner."""
    kwargs: dict[str, object] = {
        "repo_path": options.resolve("."),
        "model": options.effective_model,
        "timeout": options.timeout_seconds,
    }
    cls = get_agent_class(options.agent)
    binary_kwarg = _BINARY_KWARGS.get(cls)
    if binary_kwarg:
        kwargs[binary_kwarg] = agent_binary(options)
    return create_agent(options.agent, **kwargs)


def _print_preflight_failures(report: PreflightReport) -> None:
    print("\nError: preflight checks failed before execution.", file=sys.stderr)
    for message in report.failure_messages():
        print(f"  - {message}", file=sys.stderr)
    print("\nRun 'coralph doctor' for full details.", file=sys.stderr)


def _print_doctor_report(report: PreflightReport) -> None:
    print("\n  Coralph - Setup Diagnostics")
    print("  " + "=" * 58)
    print(f"  Working directory: {report.working_dir}")
    for check in report.checks:
        status = {"pass": "PASS", "warn": "WARN", "fail": "FAIL"}.get(check.status, "INFO")
        print(f"\n  [{status}] {check.label}")
        print(f"    {check.detail}")
        if check.hint and check.status != "pass":
            print(f"    Fix: {check.hint}")
    summary = report.summary
    print("\n  " + "-" * 58)
    print(f"  Summary: {summary['pass']} pass, {summary['warn']} warn, {summary['fail']} fail")
    print(f"  Ready:   {'yes' if report.ready else 'no'}\n")


def _run_init(args: argparse.Namespace, options: LoopOptions) -> int:
    report = run_init(options.resolve("."), options, force=args.force)
    for message in report.messages:
        print(message)
    for error in report.errors:
        print(f"Error: {error}", file=sys.stderr)
    return EXIT_OK if report.ok else EXIT_FAILURE


def _run_loop(args: argparse.Namespace, options: LoopOptions) -> int:
    if options.agent not in list_agents():
        print(
            f"Error: unknown agent '{options.agent}'. Available: {', '.join(list_agents())}",
            file=sys.stderr,
        )
        return EXIT_USAGE

    if not args.skip_preflight:
        report = build_preflight_report(options)
        if not report.ready:
            _print_preflight_failures(report)
            return EXIT_FAILURE
        for message in report.warning_messages():
            logger.warning(message)

    sink: LoopEventSink
    if options.stream_events:
        sink = EventStreamSink(cwd=options.resolve("."))
    else:
        sink = ConsoleOutput()

    cancel_event = threading.Event()

    def _on_sigint(signum: int, frame: object) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        print("\nCancelling... (press Ctrl+C again to abort)", file=sys.stderr)
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        controller = LoopController(
            options,
            build_runner(options),
            sink=sink,
            cancel_event=cancel_event,
        )
        result = controller.run()
    finally:
        signal.signal(signal.SIGINT, previous)
    return result.exit_code


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate command."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(_normalize_argv(list(sys.argv[1:] if argv is None else argv)))

    try:
        options = load_options(_overrides(args), config_file=args.config)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "init":
        _configure_logging(args.verbose, None, quiet=False)
        return _run_init(args, options)

    if args.command == "doctor":
        _configure_logging(args.verbose, None, quiet=False)
        report = build_preflight_report(options)
        _print_doctor_report(report)
        return EXIT_OK if report.ready else EXIT_FAILURE

    handler = _configure_logging(args.verbose, options, quiet=options.stream_events)
    try:
        return _run_loop(args, options)
    finally:
        if handler is not None:
            logging.getLogger().removeHandler(handler)
            handler.close()


if __name__ == "__main__":
    sys.exit(main())
