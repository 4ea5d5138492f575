from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
import requests

import collectors
import shell_commands


def completed(args, returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([str(a) for a in args], returncode, stdout, stderr)


def diag_report(devices_without_persistence: List[str]) -> str:
    """Render a dcgmi diag -r 1 style report."""

    lines = [
        "+---------------------------+------------------------------------------------+",
        "| Diagnostic                | Result                                         |",
        "+===========================+================================================+",
        "|-----  Deployment  --------+------------------------------------------------|",
        "| Blacklist                 | Pass                                           |",
        "| NVML Library              | Pass                                           |",
    ]
    if devices_without_persistence:
        lines.append("| Persistence Mode          | Fail                                           |")
        for index, device in enumerate(devices_without_persistence):
            label = "Warning" if index == 0 else ""
            lines.append(
                f"|   {label:<24}| GPU {device} Persistence mode for GPU {device} is disabled. |"
            )
    else:
        lines.append("| Persistence Mode          | Pass                                           |")
    lines.extend(
        [
            "| Environmental Variables   | Pass                                           |",
            "| Page Retirement/Row Remap | Pass                                           |",
            "+---------------------------+------------------------------------------------+",
        ]
    )
    return "\n".join(lines)


class FakeDcgmHost:
    """Stands in for nvidia-smi, dcgmi and nv-hostengine on a GPU VM."""

    def __init__(
        self,
        persistence: Dict[str, bool],
        daemon_running: bool = False,
        on_requested_diag: Optional[Callable[[], None]] = None,
        hooks: Optional[Dict[Tuple[str, ...], Callable[[], None]]] = None,
    ):
        self.persistence = dict(persistence)
        self.daemon_running = daemon_running
        self.on_requested_diag = on_requested_diag
        # each hook fires once, before the command takes effect
        self.hooks = dict(hooks or {})
        self.calls: List[List[str]] = []
        self.cwds: List[Optional[Path]] = []
        self.diag_runs = 0

    def lacking_persistence(self) -> List[str]:
        return [gpu for gpu, enabled in sorted(self.persistence.items()) if not enabled]

    def __call__(self, args, *, timeout=None, cwd=None) -> subprocess.CompletedProcess:
        args = [str(a) for a in args]
        self.calls.append(args)
        self.cwds.append(cwd)
        hook = self.hooks.pop(tuple(args), None)
        if hook is not None:
            hook()

        if args[:2] == ["dcgmi", "discovery"]:
            if self.daemon_running:
                return completed(args, 0, f"{len(self.persistence)} GPUs found.")
            return completed(
                args, 255, "Error: Unable to connect to host engine. Host engine connection invalid/disconnected."
            )
        if args == ["nv-hostengine"]:
            self.daemon_running = True
            return completed(args, 0, "Started host engine version 2.4.6 using port number: 5555")
        if args == ["nv-hostengine", "--term"]:
            self.daemon_running = False
            return completed(args, 0, "Host engine successfully terminated.")
        if args[:2] == ["nvidia-smi", "-i"]:
            self.persistence[args[2]] = args[4] == "1"
            return completed(args, 0)
        if args[:2] == ["dcgmi", "diag"]:
            self.diag_runs += 1
            if self.diag_runs > 1 and self.on_requested_diag is not None:
                self.on_requested_diag()
            return completed(args, 0, diag_report(self.lacking_persistence()))
        raise AssertionError(f"unexpected command {args}")

    def toggles(self) -> List[List[str]]:
        return [call for call in self.calls if call[:2] == ["nvidia-smi", "-i"]]


@pytest.fixture
def no_host_tools(monkeypatch, tmp_path):
    """A host with none of the optional tools, log files or downloads available."""

    missing = tmp_path / "missing"
    monkeypatch.setattr(shell_commands, "command_exists", lambda name: False)
    for name in (
        "WAAGENT_LOG",
        "SYSLOG",
        "MESSAGES_LOG",
        "IB_EXTENSION_STATUS",
        "NVIDIA_EXTENSION_STATUS",
        "SYSFS_INFINIBAND",
    ):
        monkeypatch.setattr(collectors, name, missing / name.lower())

    def offline(url, dest, timeout=None):
        raise requests.ConnectionError(f"no route to {url}")

    monkeypatch.setattr(collectors, "download_file", offline)
    return missing
