import os
import subprocess

import pytest

import gpu_diagnostics
import shell_commands
from gpu_diagnostics import GpuDiagnosticSession, GpuLevel, SessionState, parse_devices_without_persistence
from tests.conftest import FakeDcgmHost, diag_report

THREE_GPUS_ONE_WITHOUT_PERSISTENCE = {"0": True, "1": False, "2": True}


class TestParseDevicesWithoutPersistence:
    def test_single_failing_device(self):
        assert parse_devices_without_persistence(diag_report(["1"])) == ["1"]

    def test_continuation_rows_are_included(self):
        assert parse_devices_without_persistence(diag_report(["0", "3"])) == ["0", "3"]

    def test_passing_report_has_no_devices(self):
        assert parse_devices_without_persistence(diag_report([])) == []

    def test_gpu_mentions_outside_the_block_are_ignored(self):
        report = diag_report(["2"]) + "\n| Memory Bandwidth          | Fail - GPU 5 bandwidth low |"
        assert parse_devices_without_persistence(report) == ["2"]

    def test_empty_report(self):
        assert parse_devices_without_persistence("") == []


class TestGpuDiagnosticSession:
    def test_only_devices_lacking_persistence_are_toggled_on_then_off(self, tmp_path):
        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE)
        session = GpuDiagnosticSession(tmp_path, GpuLevel.QUICK, runner=host)

        session.run()

        assert session.devices_without_persistence == ["1"]
        assert host.toggles() == [
            ["nvidia-smi", "-i", "1", "-pm", "1"],
            ["nvidia-smi", "-i", "1", "-pm", "0"],
        ]
        assert host.persistence == THREE_GPUS_ONE_WITHOUT_PERSISTENCE
        assert session.state is SessionState.IDLE

    def test_daemon_started_by_session_is_terminated(self, tmp_path):
        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE, daemon_running=False)
        session = GpuDiagnosticSession(tmp_path, runner=host)

        session.run()

        assert session.daemon_already_running is False
        assert ["nv-hostengine"] in host.calls
        assert host.calls[-1] == ["nv-hostengine", "--term"]
        assert host.daemon_running is False

    def test_daemon_already_running_is_left_running(self, tmp_path):
        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE, daemon_running=True)
        session = GpuDiagnosticSession(tmp_path, runner=host)

        session.run()

        assert session.daemon_already_running is True
        assert ["nv-hostengine"] not in host.calls
        assert ["nv-hostengine", "--term"] not in host.calls
        assert host.daemon_running is True

    @pytest.mark.parametrize("level", list(GpuLevel))
    def test_requested_level_is_run_with_its_timeout(self, tmp_path, level):
        host = FakeDcgmHost({"0": True}, daemon_running=True)
        timeouts = []

        def runner(args, *, timeout=None, cwd=None):
            if list(args)[:2] == ["dcgmi", "diag"]:
                timeouts.append((list(args)[-1], timeout))
            return host(args, timeout=timeout, cwd=cwd)

        session = GpuDiagnosticSession(tmp_path, level, runner=runner)
        session.run()

        assert timeouts[-1] == (str(int(level)), gpu_diagnostics.DIAG_TIMEOUTS[level])
        assert (tmp_path / f"dcgm-diag-{int(level)}.log").read_text().startswith("+---")

    def test_timeout_is_recorded_and_state_restored(self, tmp_path, caplog):
        def time_out():
            raise subprocess.TimeoutExpired(["dcgmi", "diag", "-r", "3"], 1200)

        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE, on_requested_diag=time_out)
        session = GpuDiagnosticSession(tmp_path, GpuLevel.EXTENDED, runner=host)

        session.run()

        assert session.timed_out is True
        assert "DCGM timed out" in caplog.text
        assert "timed out after 1200s" in (tmp_path / "dcgm-diag-3.log").read_text()
        assert host.persistence == THREE_GPUS_ONE_WITHOUT_PERSISTENCE
        assert host.daemon_running is False

    def test_restore_reentered_mid_restore_finishes_the_remaining_steps(self, tmp_path):
        persistence = {"0": False, "1": False, "2": True}
        session = None

        def abort():
            session.restore()
            raise SystemExit(0)

        host = FakeDcgmHost(persistence, hooks={("nvidia-smi", "-i", "0", "-pm", "0"): abort})
        session = GpuDiagnosticSession(tmp_path, runner=host)

        with pytest.raises(SystemExit):
            session.run()

        assert host.persistence == persistence
        assert host.daemon_running is False
        assert host.calls.count(["nv-hostengine", "--term"]) == 1
        assert session.state is SessionState.IDLE

    def test_restore_reentered_during_daemon_stop(self, tmp_path):
        session = None
        host = FakeDcgmHost(
            THREE_GPUS_ONE_WITHOUT_PERSISTENCE,
            hooks={("nv-hostengine", "--term"): lambda: session.restore()},
        )
        session = GpuDiagnosticSession(tmp_path, runner=host)

        session.run()

        assert host.daemon_running is False
        assert host.calls.count(["nvidia-smi", "-i", "1", "-pm", "0"]) == 1
        assert host.calls.count(["nv-hostengine", "--term"]) == 2

    def test_timeout_keeps_partial_output(self, tmp_path):
        def time_out():
            raise subprocess.TimeoutExpired(["dcgmi", "diag", "-r", "2"], 300, output=b"| Deployment | Pass \xff|")

        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE, on_requested_diag=time_out)
        session = GpuDiagnosticSession(tmp_path, GpuLevel.STANDARD, runner=host)

        session.run()

        log = (tmp_path / "dcgm-diag-2.log").read_text()
        assert log.startswith("| Deployment | Pass \ufffd|")
        assert "timed out after 300s" in log

    def test_interrupt_mid_diagnostic_still_restores(self, tmp_path):
        def interrupt():
            raise KeyboardInterrupt

        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE, on_requested_diag=interrupt)
        session = GpuDiagnosticSession(tmp_path, runner=host)

        with pytest.raises(KeyboardInterrupt):
            session.run()

        assert host.persistence == THREE_GPUS_ONE_WITHOUT_PERSISTENCE
        assert host.daemon_running is False

    def test_restore_is_idempotent(self, tmp_path):
        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE)
        session = GpuDiagnosticSession(tmp_path, runner=host)
        session.run()
        calls_after_run = len(host.calls)

        session.restore()
        session.restore()

        assert len(host.calls) == calls_after_run

    def test_restore_before_run_does_nothing(self, tmp_path):
        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE, daemon_running=True)
        GpuDiagnosticSession(tmp_path, runner=host).restore()
        assert host.calls == []

    def test_restore_continues_past_failing_commands(self, tmp_path, caplog):
        host = FakeDcgmHost({"0": False, "1": False})

        def runner(args, *, timeout=None, cwd=None):
            if list(args) == ["nvidia-smi", "-i", "0", "-pm", "0"]:
                raise OSError("nvidia-smi vanished")
            return host(args, timeout=timeout, cwd=cwd)

        session = GpuDiagnosticSession(tmp_path, runner=runner)
        session.run()

        assert "Could not disable persistence mode on GPU 0" in caplog.text
        assert host.persistence["1"] is False
        assert host.daemon_running is False

    def test_commands_run_from_output_dir_without_changing_cwd(self, tmp_path):
        before = os.getcwd()
        host = FakeDcgmHost(THREE_GPUS_ONE_WITHOUT_PERSISTENCE)
        out = tmp_path / "Nvidia"

        GpuDiagnosticSession(out, runner=host).run()

        assert set(host.cwds) == {out}
        assert os.getcwd() == before


def test_dcgm_requires_both_tools(monkeypatch):
    monkeypatch.setattr(shell_commands, "command_exists", lambda name: name == "dcgmi")
    assert gpu_diagnostics.is_dcgm_installed() is False

    monkeypatch.setattr(shell_commands, "command_exists", lambda name: True)
    assert gpu_diagnostics.is_dcgm_installed() is True
