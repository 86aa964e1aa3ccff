"""Artifacts Bot — control-plane launcher. Starts the task supervisor API."""

import argparse
import os
import signal
import subprocess
import sys
from pathlib import Path

from artifacts_bot.config import load_settings

ROOT = Path(__file__).parent


def main():
    parser = argparse.ArgumentParser(description="Artifacts Bot control plane")
    parser.add_argument("--env", default=None, help="Alternate environment file")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Spill files and config.json (default: ./data)")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None, help="Port (default: GUI_PORT or 13013)")
    args = parser.parse_args()

    settings = load_settings(args.env)
    port = str(args.port or settings.gui_port)

    # Build env for the server process so it sees the same settings
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())

    procs: list[subprocess.Popen] = []

    def shutdown(*_):
        print("\nShutting down...")
        for p in procs:
            p.terminate()
        for p in procs:
            p.wait()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    print(f"Starting control plane on http://localhost:{port} ...")
    procs.append(subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "backend.app:create_app", "--factory",
         "--host", args.host, "--port", port],
        cwd=ROOT, env=env,
    ))

    for p in procs:
        p.wait()


if __name__ == "__main__":
    main()
