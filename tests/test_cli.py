"""Tests for the evergreen-consul command line."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from conftest import KV_RESPONSE, FakeBackend

from evergreen_consul.cli import cli, strip_prefix
from evergreen_consul.directive import ConsulDirective


@pytest.fixture
def runner():
    return CliRunner()


def patch_backend(responses):
    """Make the get command use a fake backend with canned responses."""
    return patch(
        "evergreen_consul.cli.ConsulDirective",
        side_effect=lambda config: ConsulDirective(config, backend=FakeBackend(responses)),
    )


def test_strip_prefix():
    assert strip_prefix("$consul:kv?key=db") == "kv?key=db"
    assert strip_prefix("kv?key=db") == "kv?key=db"
    assert strip_prefix("$env:HOME") == "$env:HOME"


class TestOperationsCommand:
    def test_lists_operations(self, runner):
        result = runner.invoke(cli, ["operations"])

        assert result.exit_code == 0
        assert "kv.get (kv)" in result.output
        assert "acl.get (acl)  requires: id" in result.output

    def test_json_output(self, runner):
        result = runner.invoke(cli, ["operations", "--json-output"])

        assert result.exit_code == 0
        listing = json.loads(result.output)["result"]
        by_name = {entry["name"]: entry for entry in listing}
        assert len(by_name) == 27
        assert by_name["kv.get"]["aliases"] == ["kv"]
        assert "recurse" in by_name["kv.get"]["optional"]
        assert "mode" not in by_name["kv.get"]["optional"]


class TestParseCommand:
    def test_parse(self, runner):
        result = runner.invoke(cli, ["parse", "$consul:kv?key=db&mode=watch", "--json-output"])

        assert result.exit_code == 0
        parsed = json.loads(result.output)["result"]
        assert parsed["method"] == "kv.get"
        assert parsed["options"]["key"] == "db"
        assert parsed["options"]["mode"] == "watch"

    def test_invalid_operation(self, runner):
        result = runner.invoke(cli, ["parse", "blah"])

        assert result.exit_code != 0
        assert "Error" in result.output
        assert "blah" in result.output


class TestGetCommand:
    def test_get(self, runner):
        with patch_backend([KV_RESPONSE]):
            result = runner.invoke(cli, ["get", "kv?key=db", "--uri", "http://consul.local:8500"])

        assert result.exit_code == 0
        assert json.loads(result.output) == KV_RESPONSE

    def test_get_failure(self, runner):
        with patch_backend([ConnectionError("connect ECONNREFUSED")]):
            result = runner.invoke(cli, ["get", "acl.list", "--uri", "http://consul.local:8500"])

        assert result.exit_code != 0
        assert "Failed to retrieve 'acl.list'" in result.output

    def test_get_json_failure(self, runner):
        with patch_backend([ConnectionError("connect ECONNREFUSED")]):
            result = runner.invoke(
                cli, ["get", "acl.list", "--uri", "http://consul.local:8500", "--json-output"]
            )

        assert result.exit_code != 0
        assert '"status": "error"' in result.output

    def test_get_with_config_file(self, runner, tmp_path):
        config_file = tmp_path / "consul.yml"
        config_file.write_text("consul:\n  host: consul.example.com\n")
        configs = []

        def make_directive(config):
            configs.append(config)
            return ConsulDirective(config, backend=FakeBackend(["leader:8300"]))

        with patch("evergreen_consul.cli.ConsulDirective", side_effect=make_directive):
            result = runner.invoke(cli, ["get", "leader", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "leader:8300" in result.output
        assert configs[0].host == "consul.example.com"
