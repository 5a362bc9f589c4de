"""Tests for the seaterm command line."""

import json

from click.testing import CliRunner

from seaterm.__main__ import cli


def invoke(*args):
    return CliRunner().invoke(cli, list(args))


class TestConfigOptions:

    def test_save_config_records_local_root(self, tmp_path):
        config = tmp_path / "config.json"
        root = tmp_path / "transfers"
        root.mkdir()

        result = invoke("--config", str(config), "--local-root", str(root), "--save-config")

        assert result.exit_code == 0, result.output
        assert f"Settings saved to {config}" in result.output
        assert json.loads(config.read_text())["local_root"] == str(root)

    def test_reset_config_restores_defaults(self, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"exec_timeout": 5.0, "history_size": 3}))

        result = invoke("--config", str(config), "--reset-config", "--save-config")

        assert result.exit_code == 0, result.output
        saved = json.loads(config.read_text())
        assert saved["exec_timeout"] == 60.0
        assert saved["history_size"] == 500

    def test_local_root_must_be_a_directory(self, tmp_path):
        result = invoke("--config", str(tmp_path / "config.json"),
                        "--local-root", str(tmp_path / "missing"), "--save-config")
        assert result.exit_code == 2
        assert not (tmp_path / "config.json").exists()

    def test_version(self):
        result = invoke("--version")
        assert result.exit_code == 0
        assert "seaterm" in result.output
