"""
Build the portable ZEPB Merger executable with PyInstaller

Usage:
    python build_exe.py

Produces dist/ZEPB_Merger.exe. When a Ghostscript build is unpacked into
ghostscript/ (with ghostscript/bin/gswin64c.exe), it is bundled and the
compression tab uses it before any system installation.
"""

import os
import shutil
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).parent
APP_NAME = "ZEPB_Merger"
ENTRY = ROOT / "zepb_merger_gui.py"
ICON = ROOT / "assets" / "icon.ico"
GHOSTSCRIPT_DIR = ROOT / "ghostscript"
HIDDEN_IMPORTS = ("pypdf", "PIL", "PIL._tkinter_finder", "docx")


def ensure_pyinstaller():
    try:
        import PyInstaller  # noqa: F401
    except ImportError:
        print("Installing PyInstaller...")
        subprocess.check_call([sys.executable, "-m", "pip", "install", "pyinstaller>=6.0"])


def remove_previous_output():
    for name in ("build", "dist"):
        target = ROOT / name
        if not target.exists():
            continue
        print(f"Removing {name}/")
        try:
            shutil.rmtree(target)
        except PermissionError as exc:
            # dist/ stays locked while the built exe is running.
            print(f"  could not remove {name}/: {exc}")


def pyinstaller_command():
    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--onefile",
        "--windowed",
        "--clean",
        f"--name={APP_NAME}",
    ]
    cmd += [f"--hidden-import={module}" for module in HIDDEN_IMPORTS]

    if ICON.exists():
        cmd.append(f"--icon={ICON}")
    if (GHOSTSCRIPT_DIR / "bin").is_dir():
        cmd.append(f"--add-data={GHOSTSCRIPT_DIR}{os.pathsep}ghostscript")
    else:
        print("No ghostscript/ folder: compression will need a system Ghostscript or fall back to pypdf.")

    cmd.append(str(ENTRY))
    return cmd


def main():
    if not ENTRY.exists():
        sys.exit(f"Entry point not found: {ENTRY}")

    ensure_pyinstaller()
    remove_previous_output()

    cmd = pyinstaller_command()
    print(" ".join(cmd))
    returncode = subprocess.run(cmd, cwd=ROOT).returncode
    if returncode != 0:
        sys.exit(f"PyInstaller failed with exit code {returncode}")

    exe_path = ROOT / "dist" / f"{APP_NAME}.exe"
    if exe_path.exists():
        print(f"Built {exe_path} ({exe_path.stat().st_size / (1024 * 1024):.1f} MB)")
    else:
        print(f"PyInstaller finished but {exe_path} is missing")


if __name__ == "__main__":
    main()
