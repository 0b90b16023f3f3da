"""Tests for the command line surface."""

import json

import pytest

import cli
from database import StoreDatabase


class OfflineMessenger:
    """Stands in for the messenger when no supervisor is running."""

    def __init__(self, wake=None, **kwargs):
        self.wake = wake

    def update_proxy_settings(self):
        return {"success": True}

    def close(self):
        pass


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, store_file):
    monkeypatch.setenv("STORE_FILE", store_file)
    monkeypatch.setattr(cli, "Messenger", OfflineMessenger)


def _only_group_id(store_file):
    return StoreDatabase(store_file).load().groups[0].id


class TestCli:

    def test_group_and_host_workflow(self, store_file, capsys):
        assert cli.main(["group", "add", "Staging"]) == 0
        group_id = _only_group_id(store_file)

        assert cli.main(["host", "add", group_id, "10.0.0.1", "Example.com"]) == 0
        assert cli.main(["list"]) == 0
        out = capsys.readouterr().out
        assert "[*] Staging" in out
        assert "example.com" in out

        assert cli.main(["evaluate", "https://www.example.com:8443/path"]) == 0
        assert "PROXY 10.0.0.1:8443" in capsys.readouterr().out.splitlines()

    def test_duplicate_group_fails(self, capsys):
        assert cli.main(["group", "add", "Dup"]) == 0
        assert cli.main(["group", "add", "Dup"]) == 1

    def test_group_disable(self, store_file):
        cli.main(["group", "add", "Staging"])
        group_id = _only_group_id(store_file)
        assert cli.main(["group", "disable", group_id]) == 0
        assert StoreDatabase(store_file).load().active_groups == []

    def test_proxy_set_and_show_masks_password(self, capsys):
        assert cli.main(["proxy", "set", "--host", "proxy.local", "--port", "1080",
                         "--username", "bob", "--password", "hunter2", "--bypass", "*.corp.example"]) == 0
        capsys.readouterr()
        assert cli.main(["proxy", "show"]) == 0
        shown = json.loads(capsys.readouterr().out)
        assert shown["auth"]["password"] == "********"
        assert shown["bypassList"] == ["corp.example"]

    def test_proxy_set_rejects_bad_bypass(self):
        assert cli.main(["proxy", "set", "--host", "proxy.local", "--port", "1080", "--bypass", "bad rule"]) == 1

    def test_import_and_export_hosts(self, store_file, tmp_path, capsys):
        cli.main(["group", "add", "Imported"])
        group_id = _only_group_id(store_file)
        hosts_file = tmp_path / "hosts"
        hosts_file.write_text("10.0.0.1 a.com\nnonsense\n")

        assert cli.main(["import", "hosts", group_id, str(hosts_file)]) == 0
        capsys.readouterr()

        assert cli.main(["export", "hosts", "--no-comments"]) == 0
        assert "10.0.0.1 a.com" in capsys.readouterr().out

    def test_export_json_to_file(self, tmp_path):
        cli.main(["group", "add", "A"])
        output = tmp_path / "export.json"
        assert cli.main(["export", "json", "-o", str(output)]) == 0
        assert json.loads(output.read_text())["type"] == "full-config"

    def test_evaluate_pac(self, capsys):
        assert cli.main(["evaluate", "--pac"]) == 0
        assert "FindProxyForURL" in capsys.readouterr().out

    def test_evaluate_requires_url(self):
        assert cli.main(["evaluate"]) == 2
