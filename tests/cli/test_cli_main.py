"""Tests for the CertKeeper CLI entry point (certkeeper.cli.main).

The subcommands run against a real store in a temp directory; only the
``run`` command, which blocks until signalled, is mocked.
"""

from __future__ import annotations

import json
import os
from unittest.mock import patch

import pytest
import yaml

from certkeeper.app.engine import Engine
from certkeeper.cli.main import _build_parser, main
from certkeeper.config.settings import build_settings

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def parser():
    """Return a freshly built ArgumentParser."""
    return _build_parser()


@pytest.fixture
def config_path(tmp_path, engine_config_data):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        yaml.safe_dump(engine_config_data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return str(cfg_path)


@pytest.fixture
def seeded(engine_config_data):
    """Create a root CA through the engine, then release the store."""
    engine = Engine.from_settings(build_settings(engine_config_data))
    try:
        root = engine.store.create({"name": "root", "type": "rootCA", "subject": {"commonName": "CLI Root"}})
    finally:
        engine.shutdown()
    return root


def _run(argv) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


# ===========================================================================
# Parser construction
# ===========================================================================


class TestParser:
    def test_config_is_required(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["list"])

    def test_list_filters(self, parser):
        args = parser.parse_args(["-c", "x.yaml", "list", "--type", "server", "--expiring", "30", "--all"])
        assert (args.command, args.cert_type, args.expiring, args.include_missing) == ("list", "server", 30, True)

    def test_unknown_type_rejected(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["-c", "x.yaml", "list", "--type", "wildcard"])

    def test_renew_options(self, parser):
        args = parser.parse_args(["-c", "x.yaml", "renew", "abcd", "--no-deploy"])
        assert (args.fingerprint, args.no_deploy) == ("abcd", True)


# ===========================================================================
# Config handling
# ===========================================================================


class TestConfigHandling:
    def test_missing_config_file(self, tmp_path, capsys):
        assert _run(["-c", str(tmp_path / "nope.yaml"), "list"]) == 1
        assert "configuration file not found" in capsys.readouterr().err

    def test_invalid_config(self, tmp_path, capsys):
        cfg = tmp_path / "bad.yaml"
        cfg.write_text(yaml.safe_dump({"storeDir": str(tmp_path), "renewalSchedule": "never"}), encoding="utf-8")
        assert _run(["-c", str(cfg), "--validate-only"]) == 1
        assert "certkeeper: error:" in capsys.readouterr().err

    def test_validate_only(self, config_path, engine_config_data, capsys):
        assert _run(["-c", config_path, "--validate-only"]) == 0
        out = capsys.readouterr().out
        assert f"store:        {engine_config_data['storeDir']}" in out
        assert "toolchain:    native" in out


# ===========================================================================
# Subcommands
# ===========================================================================


class TestSubcommands:
    def test_list(self, config_path, seeded, capsys):
        assert _run(["-c", config_path, "list"]) == 0
        (row,) = json.loads(capsys.readouterr().out)
        assert row["fingerprint"] == seeded.fingerprint
        assert row["type"] == "rootCA"
        assert row["status"] == "active"

    def test_status(self, config_path, seeded, capsys):
        assert _run(["-c", config_path, "status"]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["certificates"] == 1
        assert status["schedule"] == "0 0 * * *"
        assert status["nextRun"]
        assert status["masterKeyVersion"]

    def test_renew_by_name(self, config_path, seeded, capsys):
        assert _run(["-c", config_path, "renew", "root", "--no-deploy"]) == 0
        result = json.loads(capsys.readouterr().out)
        assert result["previousFingerprint"] == seeded.fingerprint
        assert result["fingerprint"] != seeded.fingerprint
        assert "deployment" not in result

    def test_deploy_by_prefix(self, config_path, seeded, capsys):
        assert _run(["-c", config_path, "deploy", seeded.fingerprint[:12]]) == 0
        assert json.loads(capsys.readouterr().out)["status"] == "empty"

    def test_unknown_fingerprint(self, config_path, seeded, capsys):
        assert _run(["-c", config_path, "deploy", "ffff0000"]) == 1
        assert "No certificate matches" in capsys.readouterr().err

    def test_refresh_and_rotate(self, config_path, seeded, capsys):
        assert _run(["-c", config_path, "refresh"]) == 0
        assert json.loads(capsys.readouterr().out) == []
        assert _run(["-c", config_path, "rotate-key"]) == 0
        assert json.loads(capsys.readouterr().out)["keyVersion"]

    def test_corrupt_index_exit_code(self, config_path, engine_config_data, capsys):
        store_dir = engine_config_data["storeDir"]
        os.makedirs(store_dir, exist_ok=True)
        with open(os.path.join(store_dir, "certificates.json"), "w", encoding="utf-8") as fh:
            fh.write("[]garbage")
        assert _run(["-c", config_path, "list"]) == 2
        assert "certkeeper: error:" in capsys.readouterr().err

    def test_run_is_the_default_command(self, config_path):
        with patch("certkeeper.cli.commands.run.run_engine") as run_engine:
            main(["-c", config_path])
        run_engine.assert_called_once()
