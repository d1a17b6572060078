#!/usr/bin/env python3
"""
Build the standalone edgedhcp executable
Usage: python3 build.py [--version VERSION]

Environment Variables:
  VERSION: Version string (e.g., 1.0.2), overridden by --version
"""

import os
import sys

import PyInstaller.__main__

SCRIPT = "edgedhcp.py"
NAME = "edgedhcp"

# Flat-layout modules imported by the CLI
LOCAL_MODULES = [
    "allocator",
    "config",
    "errors",
    "gateway",
    "logconf",
    "models",
    "reconcile",
    "subnets",
]

THIRD_PARTY = [
    "--hidden-import=sqlalchemy.dialects.sqlite",
    "--hidden-import=sqlalchemy.dialects.postgresql",
    "--hidden-import=rich.logging",
    "--collect-all=sqlalchemy",
    "--collect-all=rich",
    "--collect-submodules=httpx",
]


def parse_version(argv):
    version = os.environ.get("VERSION")
    if not argv:
        return version
    if argv[0] != "--version":
        print(f"❌ Unknown argument: {argv[0]}")
        print("Usage: python3 build.py [--version VERSION]")
        sys.exit(1)
    if len(argv) < 2:
        print("❌ Error: --version requires a version string")
        sys.exit(1)
    return argv[1]


def pyinstaller_args(output_name):
    # No config is bundled; the CLI writes one to ~/.config/edgedhcp on first run
    args = [SCRIPT, "--onefile", f"--name={output_name}", "--paths=."]
    args += [f"--hidden-import={m}" for m in LOCAL_MODULES]
    args += THIRD_PARTY
    args += ["--clean", "--noconfirm"]
    return args


def main():
    version = parse_version(sys.argv[1:])

    missing = [f for f in [SCRIPT] + [f"{m}.py" for m in LOCAL_MODULES] if not os.path.exists(f)]
    if missing:
        print(f"❌ Error: missing source files: {', '.join(missing)}")
        sys.exit(1)

    output_name = NAME if version is None else f"{NAME}-v{version}"
    print(f"🔨 Building standalone executable for {SCRIPT}...")
    print(f"📦 Version: {version if version else 'latest'}")
    print(f"📁 Output: dist/{output_name}")

    PyInstaller.__main__.run(pyinstaller_args(output_name))

    print(f"✅ Build complete! Executable: dist/{output_name}")


if __name__ == "__main__":
    main()
