from __future__ import annotations

import json

import pytest

import cloudpack.cli as cli
from cloudpack.cli import _CERTIFICATE_KEYS, _require, _values, build_parser, main
from cloudpack.core.exceptions import ConfigurationError

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

EMPTY = {"aws": {}, "install": {}, "classifier": {}, "certificate": {}, "logging": {}}


class FakeWorkflow:
    def __init__(self, provider):
        self.provider = provider

    def list_keynames(self):
        return [{"name": "ops", "fingerprint": "aa:bb"}]


@pytest.fixture
def quiet(monkeypatch):
    """Keep main() from touching process-wide logging and signal state."""
    configured = []
    monkeypatch.setattr(cli, "setup_logging", lambda config: configured.append(config) or [])
    monkeypatch.setattr(cli.signal, "signal", lambda *args: None)
    monkeypatch.setattr(cli.logger, "remove", lambda *args: None)
    return configured


class TestParser:
    def test_bootstrap_flags(self):
        args = build_parser().parse_args(
            [
                "bootstrap",
                "--image", "ami-123",
                "--type", "t3.small",
                "-g", "web:db",
                "--as", "webservers",
                "--puppetagent-certname", "web1",
            ]
        )
        assert args.flavor == "t3.small"
        assert args.security_groups == "web:db"
        assert args.node_group == "webservers"
        assert args.certname == "web1"
        assert args.tags_not_supported is None

    def test_terminate_defaults(self):
        args = build_parser().parse_args(["terminate", "a.example.com"])
        assert args.terminate_id == "dns-name"
        assert args.force is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestValues:
    def test_flags_override_file(self):
        args = build_parser().parse_args(["install", "host", "--login", "ubuntu"])
        config = {**EMPTY, "install": {"login": "root", "keyfile": "~/.ssh/ops.pem", "unrelated": 1}}

        values = _values(args, config, "install", cli._INSTALL_KEYS)

        assert values["login"] == "ubuntu"
        assert values["keyfile"] == "~/.ssh/ops.pem"
        assert "unrelated" not in values

    def test_certificate_flags_map_to_option_names(self):
        args = build_parser().parse_args(["init", "host", "--ca-environment", "staging", "--ca-insecure"])
        values = _values(args, EMPTY, "certificate", _CERTIFICATE_KEYS)
        assert values == {"environment": "staging", "insecure": True}

    def test_require_names_flags(self):
        with pytest.raises(ConfigurationError, match="--key-name, --flavor"):
            _require({"image": "ami-123", "key_name": ""}, "image", "key_name", "flavor")


class TestMain:
    def test_invalid_config(self, monkeypatch, capsys, quiet):
        def broken():
            raise ConfigurationError("Invalid TOML in cloudpack.toml")

        monkeypatch.setattr(cli, "load_config", broken)

        assert main(["list"]) == 1
        assert "Invalid TOML" in capsys.readouterr().err
        assert quiet == []

    def test_missing_required_option(self, monkeypatch, quiet):
        monkeypatch.setattr(cli, "load_config", lambda: EMPTY)
        assert main(["create", "--image", "ami-123"]) == 1

    def test_debug_flag_overrides_file_level(self, monkeypatch, quiet):
        monkeypatch.setattr(cli, "load_config", lambda: {**EMPTY, "logging": {"level": "WARNING"}})
        monkeypatch.setattr(cli, "ProvisionWorkflow", FakeWorkflow)

        assert main(["--debug", "list-keynames"]) == 0
        assert quiet[0].level == "DEBUG"

    def test_result_printed_as_json(self, monkeypatch, capsys, quiet):
        monkeypatch.setattr(cli, "load_config", lambda: EMPTY)
        monkeypatch.setattr(cli, "ProvisionWorkflow", FakeWorkflow)

        assert main(["list-keynames", "--region", "eu-west-1"]) == 0
        assert json.loads(capsys.readouterr().out) == [{"name": "ops", "fingerprint": "aa:bb"}]
