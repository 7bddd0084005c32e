"""
Command line entry point: run one preview session in the foreground.

    python -m preview_runtime records.json REQUEST_ID [--store sessions.json]

The session is started, its status is printed as it changes, and it is torn
down on Ctrl+C (or as soon as it fails).
"""

import argparse
import sys
import time

import structlog

from preview_runtime.config import ConfigError, get_config
from preview_runtime.errors import PreviewRuntimeError
from preview_runtime.log import configure_logging
from preview_runtime.schemas import SessionStatus, TeardownReason
from preview_runtime.sandbox.gate import AssemblyRecordGate, load_assembly_records
from preview_runtime.sandbox.preview import PreviewRuntime
from preview_runtime.sandbox.store import InMemorySessionStore, JsonFileSessionStore

logger = structlog.get_logger()

POLL_INTERVAL = 1.0


def _watch(runtime: PreviewRuntime, session_id: str) -> int:
    """Print status changes until the session ends. Returns the exit code."""
    last = None
    while True:
        snapshot = runtime.get_status(session_id)
        if snapshot.status != last:
            last = snapshot.status
            print(f"[{session_id[:8]}] {last.value}")
            if last == SessionStatus.RUNNING:
                print(f"Preview available at {snapshot.preview_url} (Ctrl+C to stop)")

        if last == SessionStatus.FAILED:
            print(f"Failed during {snapshot.failure_stage.value}:\n{snapshot.failure_output}")
            return 1
        if last == SessionStatus.TERMINATED:
            return 0
        time.sleep(POLL_INTERVAL)


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run a sandboxed preview of an assembled application")
    parser.add_argument("records", help="JSON file with upstream assembly records")
    parser.add_argument("request_id", help="Request to preview")
    parser.add_argument(
        "--store",
        help="Persist session records to this JSON file (default: in memory)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    try:
        config = get_config()
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2

    configure_logging("DEBUG" if args.debug else config.log_level, json=config.log_json)

    gate = AssemblyRecordGate(load_assembly_records(args.records))
    store = JsonFileSessionStore(args.store) if args.store else InMemorySessionStore()
    runtime = PreviewRuntime(gate=gate, store=store, config=config)

    try:
        session_id = runtime.start_preview(args.request_id)
    except PreviewRuntimeError as e:
        print(str(e), file=sys.stderr)
        return 1

    try:
        return _watch(runtime, session_id)
    except KeyboardInterrupt:
        logger.info("preview.interrupted", session_id=session_id)
        runtime.terminate_preview(session_id, TeardownReason.MANUAL)
        return 0
    finally:
        runtime.shutdown()
        session = runtime.get_session(session_id)
        print(f"Session hash: {session.session_hash}")


if __name__ == "__main__":
    sys.exit(main())
