from __future__ import annotations

import argparse
import hashlib
import os
import subprocess
import sys
import venv
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent
VENV_DIR = PROJECT_ROOT / ".venv"
REQUIREMENTS_FILE = PROJECT_ROOT / "app" / "requirements.txt"
REQUIREMENTS_MARKER = VENV_DIR / ".requirements.applied"
APP_ENTRYPOINT = PROJECT_ROOT / "app" / "main.py"


def venv_python() -> Path:
    if os.name == "nt":
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def ensure_virtualenv() -> None:
    if VENV_DIR.exists() and venv_python().exists():
        return
    print(f"[launcher] Creating virtual environment at {VENV_DIR}...")
    venv.EnvBuilder(with_pip=True).create(VENV_DIR)


def requirements_signature() -> str:
    if not REQUIREMENTS_FILE.exists():
        raise FileNotFoundError(f"Requirements file not found: {REQUIREMENTS_FILE}")
    return hashlib.sha256(REQUIREMENTS_FILE.read_bytes()).hexdigest()


def ensure_requirements(force: bool = False) -> None:
    signature = requirements_signature()
    if not force and REQUIREMENTS_MARKER.exists() and REQUIREMENTS_MARKER.read_text().strip() == signature:
        print("[launcher] Dependencies satisfied.")
        return
    pip = [str(venv_python()), "-m", "pip", "install"]
    print(f"[launcher] Installing dependencies from {REQUIREMENTS_FILE}...")
    subprocess.check_call(pip + ["--upgrade", "pip"])
    subprocess.check_call(pip + ["-r", str(REQUIREMENTS_FILE)])
    REQUIREMENTS_MARKER.write_text(signature)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start the daily report API in a managed virtualenv.")
    parser.add_argument("--host", default=os.environ.get("DAILY_REPORT_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("DAILY_REPORT_PORT", "8000")))
    parser.add_argument("--reinstall", action="store_true", help="reinstall dependencies even if unchanged")
    return parser.parse_args(argv)


def launch_app(argv=None) -> int:
    args = parse_args(argv)
    ensure_virtualenv()
    ensure_requirements(force=args.reinstall)
    if not APP_ENTRYPOINT.exists():
        raise FileNotFoundError(f"App entrypoint not found: {APP_ENTRYPOINT}")

    env = dict(os.environ, DAILY_REPORT_HOST=args.host, DAILY_REPORT_PORT=str(args.port))
    print(f"[launcher] Starting Daily Report API on http://{args.host}:{args.port} ...")
    return subprocess.call([str(venv_python()), str(APP_ENTRYPOINT)], env=env)


if __name__ == "__main__":
    try:
        exit_code = launch_app()
    except subprocess.CalledProcessError as exc:
        print(f"[launcher] Command failed with exit code {exc.returncode}", file=sys.stderr)
        sys.exit(exc.returncode)
    except OSError as exc:
        print(f"[launcher] {exc}", file=sys.stderr)
        sys.exit(1)
    else:
        sys.exit(exit_code)
