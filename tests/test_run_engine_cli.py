import os
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def run_cli(args, env=None):
    cmd = [sys.executable, str(ROOT / "scripts" / "run_engine.py")] + args
    res = subprocess.run(cmd, capture_output=True, text=True, cwd=ROOT, env=env, timeout=60)
    return res.returncode, res.stdout, res.stderr


def test_missing_config_exits(tmp_path):
    code, out, err = run_cli(["--config", str(tmp_path / "nope.yaml")])
    assert code == 1
    assert "Failed to load config" in out


def test_invalid_config_exits(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("risk:\n  max_leverage: 500\n")
    code, out, err = run_cli(["--config", str(config)])
    assert code == 1
    assert "Failed to load config" in out


def test_missing_credentials_are_logged(tmp_path):
    log_file = tmp_path / "engine.log"
    config = tmp_path / "config.yaml"
    config.write_text(
        "persistence:\n"
        "  backend: memory\n"
        f"  log_file: {log_file}\n"
    )
    env = {k: v for k, v in os.environ.items() if not k.startswith("BINANCE_")}
    code, out, err = run_cli(
        ["--config", str(config), "--credentials", str(tmp_path / "missing.json")], env=env
    )
    assert code == 1
    assert "Failed to load credentials" in out
    assert "Failed to load credentials" in log_file.read_text()
