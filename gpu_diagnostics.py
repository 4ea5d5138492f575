"""DCGM diagnostic pass with guaranteed restoration of GPU state.

DCGM refuses to run some of its tests on GPUs without persistence mode, so the
session turns persistence mode on for the GPUs that lack it, runs the requested
diagnostic level and then puts everything back the way it found it: the same
GPUs go back to non-persistent mode and the host engine is terminated if this
session was the one that started it.

``GpuDiagnosticSession.restore`` is the single restoration routine.  ``run``
calls it from a ``finally`` block and the orchestrator's SIGINT handler calls
it on the active session, so both paths converge on the same cleanup.
"""

from __future__ import annotations

import logging
import re
import subprocess
from enum import Enum, IntEnum, auto
from pathlib import Path
from typing import Callable, List, Optional

import shell_commands

LOG = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]

HOST_ENGINE = "nv-hostengine"
DCGMI = "dcgmi"
HOST_ENGINE_UNREACHABLE = "unable to connect to host engine"
DCGMI_CONNECTION_FAILED = 255

PERSISTENCE_FAIL = re.compile(r"Persistence Mode.*Fail")
# Continuation rows of a result block have an empty or Warning/Info first cell.
CONTINUATION_ROW = re.compile(r"^\|\s*(?:Warning|Info)?\s*\|", re.IGNORECASE)
GPU_ID = re.compile(r"GPU (\d+)")


class GpuLevel(IntEnum):
    QUICK = 1
    STANDARD = 2
    EXTENDED = 3


DIAG_TIMEOUTS = {
    GpuLevel.QUICK: 60,
    GpuLevel.STANDARD: 5 * 60,
    GpuLevel.EXTENDED: 20 * 60,
}

DIAG_DESCRIPTIONS = {
    GpuLevel.QUICK: "~ < 1 min",
    GpuLevel.STANDARD: "~ 2 min",
    GpuLevel.EXTENDED: "~ 12 min",
}


class SessionState(Enum):
    IDLE = auto()
    DAEMON_STARTING = auto()
    PERSISTENCE_ENABLING = auto()
    DIAG_RUNNING = auto()
    PERSISTENCE_RESTORING = auto()
    DAEMON_STOPPING = auto()


def is_dcgm_installed() -> bool:
    return shell_commands.command_exists(HOST_ENGINE) and shell_commands.command_exists(DCGMI)


def parse_devices_without_persistence(report: str) -> List[str]:
    """Return the GPU ids listed under the failing "Persistence Mode" row of a dcgmi diag report."""

    devices: List[str] = []
    in_block = False
    for line in report.splitlines():
        if PERSISTENCE_FAIL.search(line):
            in_block = True
        elif in_block and not CONTINUATION_ROW.match(line):
            in_block = False
        if not in_block:
            continue
        for gpu in GPU_ID.findall(line):
            if gpu not in devices:
                devices.append(gpu)
    return devices


class GpuDiagnosticSession:
    """One DCGM diagnostic pass run from ``output_dir``."""

    def __init__(
        self,
        output_dir: Path,
        level: GpuLevel = GpuLevel.QUICK,
        runner: Optional[Runner] = None,
    ):
        self.output_dir = output_dir
        self.level = GpuLevel(level)
        self.runner = runner or shell_commands.run
        self.state = SessionState.IDLE
        self.daemon_already_running: Optional[bool] = None
        self.devices_without_persistence: List[str] = []
        self.timed_out = False
        self._pending_persistence: Optional[List[str]] = None
        self._daemon_stopped = False
        self._restored = False

    @property
    def log_path(self) -> Path:
        return self.output_dir / f"dcgm-diag-{int(self.level)}.log"

    def _set_state(self, state: SessionState) -> None:
        LOG.debug("GPU session: %s -> %s", self.state.name, state.name)
        self.state = state

    def _run(self, *args: str, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        # dcgmi drops stats_*.json and nvvs.log into its working directory.
        return self.runner(list(args), timeout=timeout, cwd=self.output_dir)

    def run(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        try:
            self._start_daemon()
            self._enable_persistence()
            self._run_diagnostics()
        finally:
            self.restore()

    def _start_daemon(self) -> None:
        self._set_state(SessionState.DAEMON_STARTING)
        discovery = self._run(DCGMI, "discovery", "-l")
        unreachable = (
            discovery.returncode == DCGMI_CONNECTION_FAILED
            or HOST_ENGINE_UNREACHABLE in (discovery.stdout + discovery.stderr).lower()
        )
        self.daemon_already_running = not unreachable
        if self.daemon_already_running:
            LOG.debug("%s already running, leaving it up", HOST_ENGINE)
            return
        LOG.info("Starting %s", HOST_ENGINE)
        self._run(HOST_ENGINE)

    def _enable_persistence(self) -> None:
        self._set_state(SessionState.PERSISTENCE_ENABLING)
        try:
            report = self._run(
                DCGMI, "diag", "-r", str(int(GpuLevel.QUICK)), timeout=DIAG_TIMEOUTS[GpuLevel.QUICK]
            )
        except subprocess.TimeoutExpired:
            LOG.warning("Persistence mode check timed out, leaving persistence mode untouched")
            return
        self.devices_without_persistence = parse_devices_without_persistence(report.stdout)
        for device in self.devices_without_persistence:
            LOG.debug("Enabling persistence mode on GPU %s", device)
            self._run("nvidia-smi", "-i", device, "-pm", "1")

    def _run_diagnostics(self) -> None:
        self._set_state(SessionState.DIAG_RUNNING)
        timeout = DIAG_TIMEOUTS[self.level]
        LOG.info(
            "Running GPU diagnostics Level %d (%s)", int(self.level), DIAG_DESCRIPTIONS[self.level]
        )
        try:
            result = self._run(DCGMI, "diag", "-r", str(int(self.level)), timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            self.timed_out = True
            LOG.warning("DCGM timed out")
            partial = exc.stdout or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            shell_commands.write_text(self.log_path, partial + f"\nDCGM timed out after {timeout}s")
            return
        shell_commands.write_text(self.log_path, result.stdout)

    def restore(self) -> None:
        """Undo what the session changed; safe to call more than once.

        Each step is marked done only after its command returns, so a call
        that interrupts an in-progress restore finishes whatever is left.
        """

        if self._restored:
            return
        if self._pending_persistence is None:
            self._pending_persistence = list(self.devices_without_persistence)

        self._set_state(SessionState.PERSISTENCE_RESTORING)
        while self._pending_persistence:
            device = self._pending_persistence[0]
            try:
                self._run("nvidia-smi", "-i", device, "-pm", "0")
            except (OSError, subprocess.SubprocessError) as exc:
                LOG.error("Could not disable persistence mode on GPU %s: %s", device, exc)
            if self._pending_persistence and self._pending_persistence[0] == device:
                self._pending_persistence.pop(0)

        if self.daemon_already_running is False and not self._daemon_stopped:
            self._set_state(SessionState.DAEMON_STOPPING)
            try:
                self._run(HOST_ENGINE, "--term")
            except (OSError, subprocess.SubprocessError) as exc:
                LOG.error("Could not terminate %s: %s", HOST_ENGINE, exc)
            self._daemon_stopped = True
        self._restored = True
        self._set_state(SessionState.IDLE)
