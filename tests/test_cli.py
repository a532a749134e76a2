"""Tests for vmbuilder.cli module."""

from __future__ import annotations

import signal
from unittest.mock import patch

import pytest

from vmbuilder import cli
from vmbuilder.builder import Artifact
from vmbuilder.exceptions import BuildCancelledError, ConfigValidationError, StepError


@pytest.fixture
def loaded(build_config):
    with patch("vmbuilder.cli.load_config", return_value=(build_config, [])) as mock_load:
        yield mock_load


class TestShowConfig:
    def test_prints_fields(self, build_config, capsys):
        cli.show_config(build_config)
        out = capsys.readouterr().out
        assert "  vm_name: test-vm" in out
        assert "  disk_size: 10G" in out
        assert "  qemu_img_args:" in out
        assert "    convert: []" in out


class TestMain:
    def test_invalid_config_returns_one(self, tmp_path):
        with patch("vmbuilder.cli.load_config", side_effect=ConfigValidationError(["iso_url must be specified"])), \
                patch("vmbuilder.cli.log") as mock_log:
            assert cli.main([str(tmp_path / "build.yaml")]) == 1
        mock_log.assert_called_once_with("ERROR", "iso_url must be specified")

    def test_warnings_are_logged(self, build_config):
        with patch("vmbuilder.cli.load_config", return_value=(build_config, ["memory 1 is too small, using default: 512"])), \
                patch("vmbuilder.cli.log") as mock_log:
            assert cli.main(["build.yaml", "--show-config"]) == 0
        mock_log.assert_called_once_with("WARN", "memory 1 is too small, using default: 512")

    def test_show_config_skips_build(self, loaded, capsys):
        with patch("vmbuilder.cli.Builder") as mock_builder:
            assert cli.main(["build.yaml", "--show-config"]) == 0
        mock_builder.assert_not_called()
        assert "vm_name: test-vm" in capsys.readouterr().out

    def test_force_flag_overrides_config(self, loaded):
        cli.main(["build.yaml", "--force", "--show-config"])
        path, overrides = loaded.call_args[0]
        assert str(path) == "build.yaml"
        assert overrides == {"force": True}

    def test_no_force_passes_no_overrides(self, loaded):
        cli.main(["build.yaml", "--show-config"])
        assert loaded.call_args[0][1] is None

    def test_dry_run_warns_without_kvm(self, loaded):
        with patch("vmbuilder.cli.kvm_available", return_value=False), \
                patch("vmbuilder.cli.Builder") as mock_builder, \
                patch("vmbuilder.cli.log") as mock_log:
            assert cli.main(["build.yaml", "--dry-run"]) == 0
        mock_builder.assert_not_called()
        levels = [call[0][0] for call in mock_log.call_args_list]
        assert levels == ["WARN", "SUCCESS"]

    def test_successful_build(self, loaded, capsys):
        artifact = Artifact(directory="/out", files=["/out/test-vm"])
        with patch("vmbuilder.cli.Builder") as mock_builder:
            mock_builder.return_value.run.return_value = artifact
            assert cli.main(["build.yaml"]) == 0
        out = capsys.readouterr().out
        assert "VM files in directory: /out" in out
        assert "  /out/test-vm" in out

    def test_build_error_returns_one(self, loaded):
        with patch("vmbuilder.cli.Builder") as mock_builder, patch("vmbuilder.cli.log") as mock_log:
            mock_builder.return_value.run.side_effect = StepError("Error starting VM: no network")
            assert cli.main(["build.yaml"]) == 1
        mock_log.assert_any_call("ERROR", "Error starting VM: no network")

    def test_cancelled_build_returns_130(self, loaded):
        with patch("vmbuilder.cli.Builder") as mock_builder:
            mock_builder.return_value.run.side_effect = BuildCancelledError("Build was cancelled.")
            assert cli.main(["build.yaml"]) == cli.EXIT_CANCELLED

    def test_unexpected_error_returns_one(self, loaded, capsys):
        with patch("vmbuilder.cli.Builder") as mock_builder:
            mock_builder.return_value.run.side_effect = RuntimeError("kaboom")
            assert cli.main(["build.yaml"]) == 1
        captured = capsys.readouterr()
        assert "Unexpected error: kaboom" in captured.out
        assert "RuntimeError" in captured.err

    def test_signal_handlers_set_cancel_and_are_restored(self, loaded):
        previous = signal.getsignal(signal.SIGTERM)
        seen = {}

        def fake_run(cancel):
            handler = signal.getsignal(signal.SIGTERM)
            handler(signal.SIGTERM, None)
            seen["cancelled"] = cancel.is_set()
            raise BuildCancelledError("Build was cancelled.")

        with patch("vmbuilder.cli.Builder") as mock_builder:
            mock_builder.return_value.run.side_effect = fake_run
            assert cli.main(["build.yaml"]) == 130
        assert seen["cancelled"] is True
        assert signal.getsignal(signal.SIGTERM) is previous
