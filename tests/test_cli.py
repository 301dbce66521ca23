import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from impact_cli import load_config
from impact_gateway.crypto import content_hash

from conftest import make_jpeg

ROOT = Path(__file__).resolve().parent.parent


def _run(*args, cwd=ROOT):
    env = {k: v for k, v in os.environ.items() if not k.startswith("IMPACT_")}
    cmd = [sys.executable, "-m", "impact_cli", *args]
    return subprocess.run(cmd, capture_output=True, text=True, cwd=cwd, env=env)


def test_load_config_missing_file_is_empty(tmp_path):
    assert load_config(None) == {}
    assert load_config(tmp_path / "absent.json") == {}


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_load_config_rejects_bad_content(tmp_path, content):
    p = tmp_path / "config.json"
    p.write_text(content, encoding="utf-8")
    with pytest.raises(ValueError, match="^CONFIG_ERROR"):
        load_config(p)


def test_unknown_config_key_exits_cleanly(tmp_path):
    p = tmp_path / "config.json"
    p.write_text(json.dumps({"rpc_url": "http://127.0.0.1:8545"}), encoding="utf-8")
    proc = _run("--config", str(p), "--db", str(tmp_path / "ledger.db"), "status")
    assert proc.returncode == 3, proc.stdout + "\n" + proc.stderr
    assert "CONFIG_ERROR" in proc.stderr
    assert "rpc_url" in proc.stderr
    assert "Traceback (most recent call last)" not in proc.stderr


def test_process_then_rerun_reports_duplicate(tmp_path):
    image = tmp_path / "bridge.jpg"
    data = make_jpeg()
    image.write_bytes(data)
    db = str(tmp_path / "ledger.db")

    first = _run("--db", db, "process", str(image), "--lat", "37.77", "--lng", "-122.41")
    assert first.returncode == 0, first.stdout + "\n" + first.stderr
    assert "SUCCESS" in first.stdout
    assert "success=1" in first.stdout

    # A fresh process sees the persisted ledger row.
    second = _run("--db", db, "process", str(image))
    assert second.returncode == 0, second.stdout + "\n" + second.stderr
    assert "DUPLICATE" in second.stdout

    shown = _run("--db", db, "show", content_hash(data))
    assert shown.returncode == 0
    record = json.loads(shown.stdout)
    assert record["state"] == "success"
    assert record["proposal_id"].startswith("0x")


def test_rejected_input_exits_nonzero(tmp_path):
    bogus = tmp_path / "bogus.jpg"
    bogus.write_bytes(b"definitely not a jpeg")
    proc = _run("--db", str(tmp_path / "ledger.db"), "process", str(bogus))
    assert proc.returncode == 1
    assert "REJECTED" in proc.stdout


def test_show_unknown_hash(tmp_path):
    proc = _run("--db", str(tmp_path / "ledger.db"), "show", "ab" * 32)
    assert proc.returncode == 1
    assert "No ledger record" in proc.stderr
