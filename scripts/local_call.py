"""Utility for launching the signaling relay plus a doctor and a patient client on one machine."""
from __future__ import annotations

import argparse
import atexit
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

ProcessRecord = tuple[str, subprocess.Popen]

PROCESSES: list[ProcessRecord] = []


def _register_process(name: str, proc: subprocess.Popen) -> None:
    PROCESSES.append((name, proc))


def _terminate_process(name: str, proc: subprocess.Popen, timeout: float) -> None:
    if proc.poll() is not None:
        return
    print(f"Stopping {name}")
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()


def _cleanup() -> None:
    while PROCESSES:
        name, proc = PROCESSES.pop()
        try:
            _terminate_process(name, proc, timeout=5.0)
        except Exception:
            pass


def _handle_signal(signum: int, frame: object) -> None:  # pragma: no cover - signal runtime
    _cleanup()
    sys.exit(0)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch the relay and both call participants locally")
    parser.add_argument("appointment_id", nargs="?", default="local-demo", help="Appointment id both clients join")
    parser.add_argument("--python", default=sys.executable, help="Python interpreter to use for subprocesses")
    parser.add_argument("--relay-host", default="127.0.0.1")
    parser.add_argument("--relay-port", type=int, default=8080)
    parser.add_argument("--api-base", default=None, help="Appointment REST API base; defaults to the relay host")
    parser.add_argument(
        "--interactive-role",
        choices=["doctor", "patient"],
        default="doctor",
        help="Participant attached to this terminal; the other one runs headless",
    )
    parser.add_argument("--no-video", action="store_true", help="Start both clients without camera capture")
    parser.add_argument("--relay-startup-delay", type=float, default=1.5, help="Delay before launching clients")
    parser.add_argument("--client-delay", type=float, default=0.5, help="Delay between starting clients")
    parser.add_argument("--workspace", default=str(Path(__file__).resolve().parent.parent), help="Working directory")
    return parser.parse_args()


def _launch_process(name: str, cmd: list[str], cwd: str, *, stdin: Optional[int] = None) -> subprocess.Popen:
    proc = subprocess.Popen(cmd, cwd=cwd, stdin=stdin)
    _register_process(name, proc)
    return proc


def _client_command(args: argparse.Namespace, role: str) -> list[str]:
    api_base = args.api_base or f"http://{args.relay_host}:{args.relay_port}/api"
    cmd = [
        args.python,
        "-m",
        "client",
        args.appointment_id,
        "--role",
        role,
        "--api-base",
        api_base,
        "--relay-url",
        f"ws://{args.relay_host}:{args.relay_port}/ws",
        "--chat-transport",
        "relay",
        "--receive-only",
    ]
    if args.api_base is None:
        # the relay does not serve the appointment API
        cmd.append("--no-end-call-notify")
    if args.no_video:
        cmd.append("--no-video")
    return cmd


def main() -> None:
    args = _parse_args()
    atexit.register(_cleanup)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handle_signal)
        except Exception:
            pass

    workdir = args.workspace

    relay_cmd = [
        args.python,
        "-m",
        "relay",
        "--host",
        args.relay_host,
        "--port",
        str(args.relay_port),
    ]
    print(f"Starting relay: {' '.join(relay_cmd)}")
    _launch_process("relay", relay_cmd, cwd=workdir)

    time.sleep(max(args.relay_startup_delay, 0.0))

    headless_role = "patient" if args.interactive_role == "doctor" else "doctor"
    headless_cmd = _client_command(args, headless_role)
    print(f"Starting {headless_role}: {' '.join(headless_cmd)}")
    # a pipe that is never written keeps the headless console waiting instead of hitting EOF
    _launch_process(headless_role, headless_cmd, cwd=workdir, stdin=subprocess.PIPE)
    time.sleep(max(args.client_delay, 0.0))

    interactive_cmd = _client_command(args, args.interactive_role)
    print(f"Starting {args.interactive_role}: {' '.join(interactive_cmd)}")
    interactive = _launch_process(args.interactive_role, interactive_cmd, cwd=workdir)

    try:
        interactive.wait()
    except KeyboardInterrupt:
        pass
    finally:
        _cleanup()


if __name__ == "__main__":
    main()
