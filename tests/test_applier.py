"""Tests for installing and clearing policies."""

import os

import pytest

from applier import PacFileApplier, run_command
from policy import compile_policy


@pytest.fixture
def pac_file(tmp_path):
    return str(tmp_path / "pac" / "proxy.pac")


class TestPacFileApplier:

    def test_apply_writes_script(self, pac_file):
        applier = PacFileApplier(pac_file=pac_file, apply_command="", clear_command="", clear_retry_delay=0)
        policy = compile_policy({"example.com": "10.0.0.1"})

        result = applier.apply(policy)
        assert result.success
        with open(pac_file) as f:
            assert f.read() == policy.script

    def test_noop_policy_clears(self, pac_file):
        applier = PacFileApplier(pac_file=pac_file, apply_command="", clear_command="", clear_retry_delay=0)
        applier.apply(compile_policy({"example.com": "10.0.0.1"}))

        result = applier.apply(compile_policy({}))
        assert result.success
        assert result.action == "clear"
        assert not os.path.exists(pac_file)

    def test_clear_when_nothing_installed(self, pac_file):
        applier = PacFileApplier(pac_file=pac_file, apply_command="", clear_command="", clear_retry_delay=0)
        assert applier.clear().success

    def test_apply_command_failure_reported(self, pac_file):
        applier = PacFileApplier(pac_file=pac_file, apply_command="false {pac_url}", clear_command="",
                                 clear_retry_delay=0)
        result = applier.apply(compile_policy({"example.com": "10.0.0.1"}))
        assert result.success is False
        assert "Apply command failed" in result.error

    def test_commands_formatted_with_pac_location(self, pac_file, tmp_path):
        marker = tmp_path / "marker"
        applier = PacFileApplier(pac_file=pac_file, apply_command=f"cp {{pac_file}} {marker}",
                                 clear_command=f"rm -f {marker}", clear_retry_delay=0)
        applier.apply(compile_policy({"example.com": "10.0.0.1"}))
        assert marker.exists()
        applier.clear()
        assert not marker.exists()

    def test_invalid_command_template(self, pac_file):
        with pytest.raises(ValueError):
            PacFileApplier(pac_file=pac_file, apply_command="set {unknown}", clear_command="")

    def test_pac_url_defaults_to_file_url(self, pac_file):
        applier = PacFileApplier(pac_file=pac_file, apply_command="", clear_command="")
        assert applier.pac_url == f"file://{os.path.abspath(pac_file)}"


def test_run_command_missing_binary():
    success, output = run_command(["definitely-not-a-real-binary-xyz"])
    assert success is False
    assert output
