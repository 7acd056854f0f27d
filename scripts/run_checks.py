#!/usr/bin/env python3
"""Lint, type-check and test the file_lister package.

Usage:
  python scripts/run_checks.py [--no-types] [--no-tests] [--] [pytest args...]

Tests run with Qt in offscreen mode. Optional decoders (ffmpeg, pdfium,
libvips) are reported up front because tests that need them are skipped
when they are missing.
"""

from __future__ import annotations

import argparse
import importlib.util
import os
import shutil
import subprocess
import sys


def run(cmd: list[str], env: dict[str, str] | None = None) -> int:
    print("=>", " ".join(cmd))
    return subprocess.run(cmd, env=env, check=False).returncode


def report_tools() -> None:
    print("ffmpeg:", shutil.which("ffmpeg") or "missing (video tests use a fake tool)")
    for module in ("pyvips", "pypdfium2"):
        found = importlib.util.find_spec(module) is not None
        print(f"{module}:", "installed" if found else "missing (related tests are skipped)")


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--no-types", action="store_true", help="Skip pyright")
    parser.add_argument("--no-tests", action="store_true", help="Skip pytest")
    parser.add_argument("pytest_args", nargs=argparse.REMAINDER)
    args = parser.parse_args()

    rc = run([sys.executable, "-m", "ruff", "check", "file_lister", "tests", "scripts"])
    if rc != 0:
        print("ruff failed")
        return rc

    if not args.no_types:
        rc = run([sys.executable, "-m", "pyright", "file_lister"])
        if rc != 0:
            print("pyright failed")
            return rc

    if not args.no_tests:
        report_tools()
        env = os.environ.copy()
        env.setdefault("QT_QPA_PLATFORM", "offscreen")
        extra = [a for a in args.pytest_args if a != "--"]
        rc = run([sys.executable, "-m", "pytest", "-q", *extra], env=env)
        if rc != 0:
            print("pytest failed")
            return rc

    print("All checks passed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
