#!/usr/bin/env python3
"""launcher - open a log file with the packaged application.

Usage:
    open-with-log-rocket /path/to/file.log
"""

import subprocess
import sys
from pathlib import Path

# Must match the CFBundleName of the packaged application
APP_NAME = "Log Rocket"

PROG = "open-with-log-rocket"


def open_with_app(path: Path, app_name: str = APP_NAME) -> int:
    """Ask the OS to launch the application with path as its argument.

    Returns:
        The exit status of ``open``, or 127 if ``open`` is not available
    """
    command = ["open", "-a", app_name, "--args", str(path)]
    try:
        result = subprocess.run(command, shell=False, check=False)
    except FileNotFoundError:
        print(f"Error: '{command[0]}' command not found", file=sys.stderr)
        return 127
    return result.returncode


def main(argv: list[str] | None = None) -> int:
    """Command line entry point for the launch helper."""
    args = sys.argv[1:] if argv is None else argv
    if not args:
        print(f"Usage: {PROG} <log-file-path>", file=sys.stderr)
        return 1

    file_path = Path(args[0])
    if not file_path.is_file():
        print(f"Error: File '{args[0]}' does not exist", file=sys.stderr)
        return 1

    # open(1) starts the app with / as working directory
    return open_with_app(file_path.resolve())


if __name__ == "__main__":
    sys.exit(main())
