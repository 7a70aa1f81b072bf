import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

from dende.cli import _settings, app

runner = CliRunner()


def test_check_prints_job_summary(tmp_path: Path):
    cfg = tmp_path / "dende.yaml"
    cfg.write_text(yaml.dump({
        "virustotal_token": "VT",
        "jobs": [
            {"path": str(tmp_path), "search": "ERROR", "to": ["console:ops"]},
            {"hash": ["a", "b"], "to": ["console:vt"]},
        ],
    }), encoding="utf-8")
    result = runner.invoke(app, ["check", str(cfg)])
    assert result.exit_code == 0, result.output
    rows = json.loads(result.stdout)
    assert rows[0]["kind"] == "file"
    assert rows[0]["matcher"] == "literal('ERROR')"
    assert rows[1] == {"job": 1, "kind": "hash", "to": ["console:vt"], "hashes": 2}


def test_check_rejects_bad_config(tmp_path: Path):
    cfg = tmp_path / "dende.yaml"
    cfg.write_text(yaml.dump({"jobs": [{"path": "/tmp", "to": ["console:x"]}]}), encoding="utf-8")
    result = runner.invoke(app, ["check", str(cfg)])
    assert result.exit_code == 2
    assert "configuration error" in result.output


def test_run_without_target_is_config_error():
    result = runner.invoke(app, ["run", "-T", "console:x"])
    assert result.exit_code == 2
    assert "--path or --hash" in result.output


def test_run_hash_job_without_api_key_fails_before_start(monkeypatch):
    monkeypatch.delenv("VIRUSTOTAL_API_KEY", raising=False)
    result = runner.invoke(app, ["run", "-H", "abc", "-T", "console:x"])
    assert result.exit_code == 2
    assert "API key" in result.output


def test_yaml_hash_job_takes_api_key_from_environment(tmp_path: Path, monkeypatch):
    cfg = tmp_path / "dende.yaml"
    cfg.write_text(yaml.dump({"jobs": [{"hash": ["abc"], "to": ["console:x"]}]}), encoding="utf-8")

    result = runner.invoke(app, ["check", str(cfg)], env={"VIRUSTOTAL_API_KEY": "envkey"})
    assert result.exit_code == 0, result.output

    monkeypatch.delenv("VIRUSTOTAL_API_KEY", raising=False)
    result = runner.invoke(app, ["check", str(cfg)])
    assert result.exit_code == 2
    assert "API key" in result.output


def test_run_settings_merge_tokens_before_validation(tmp_path: Path):
    cfg = tmp_path / "dende.yaml"
    cfg.write_text(yaml.dump({
        "telegram_token": "from-file",
        "jobs": [{"hash": ["abc"], "to": ["tg:1"]}],
    }), encoding="utf-8")

    settings = _settings(cfg, None, None, None, None, None, False, True, "from-env", "envkey")

    assert settings.virustotal_token_for(settings.jobs[0]) == "envkey"
    assert settings.telegram_token == "from-file"
