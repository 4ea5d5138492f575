"""Per-category collectors that populate the diagnostic bundle.

Each collector owns one subdirectory of the bundle and writes raw tool output
into it.  Nothing is parsed or interpreted.  A collector step never raises for
a missing tool, file or download: it leaves a placeholder note where the data
would have been and moves on to the next step.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import tarfile
import tempfile
import zlib
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import requests

import shell_commands as shell
from azure_endpoints import LSVMBUS_URL, STREAM_URL, download_file
from gpu_diagnostics import GpuDiagnosticSession, GpuLevel, is_dcgm_installed

LOG = logging.getLogger(__name__)

# ------------------------------ Host sources ---------------------------------

WAAGENT_LOG = Path("/var/log/waagent.log")
SYSLOG = Path("/var/log/syslog")
MESSAGES_LOG = Path("/var/log/messages")
IB_EXTENSION_STATUS = Path("/var/log/azure/ib-vmext-status")
NVIDIA_EXTENSION_STATUS = Path("/var/log/azure/nvidia-vmext-status")
SYSFS_INFINIBAND = Path("/sys/class/infiniband")

# STREAM affinity arguments for the AMD sizes it was compiled for.
STREAM_ARRAY_SIZE = "400000000"
STREAM_CPU_LIST: Dict[str, List[str]] = {
    "Standard_HB120rs_v2": [
        "0",
        "1,5,9,13,17,21,25,29,33,37,41,45,49,53,57,61,65,69,73,77,81,85,89,93,97,101,105,109,113,117",
    ],
    "Standard_HB60rs": ["0", "1,5,9,13,17,21,25,29,33,37,41,45,49,53,57"],
}
STREAM_UNSUPPORTED = "Current VM Size is not supported for stream tests"

PKEY_INDICES = (0, 1)

STRATEGY_ERRORS = (OSError, subprocess.SubprocessError, requests.RequestException)
# A truncated download surfaces as EOFError from gzip rather than a TarError.
UNPACK_ERRORS = (OSError, EOFError, zlib.error, tarfile.TarError)

Strategy = Callable[[], bool]


def first_successful(strategies: Sequence[Strategy]) -> bool:
    """Try each strategy in order and stop at the first that returns True."""

    for strategy in strategies:
        try:
            if strategy():
                return True
        except STRATEGY_ERRORS as exc:
            LOG.debug("%s failed: %s", getattr(strategy, "__name__", strategy), exc)
    return False


def get_cpu_list(vm_size: str) -> Optional[List[str]]:
    for size, cpu_list in STREAM_CPU_LIST.items():
        if size.lower() == vm_size.lower():
            return cpu_list
    return None


# ------------------------------ Collectors -----------------------------------


class Collector:
    subdir: Optional[str] = None

    def directory(self, bundle_dir: Path) -> Path:
        if self.subdir is None:
            raise ValueError(f"{type(self).__name__} does not write into the bundle")
        path = bundle_dir / self.subdir
        path.mkdir(parents=True, exist_ok=True)
        return path

    def run(self, bundle_dir: Path) -> None:
        raise NotImplementedError


class VmCollector(Collector):
    subdir = "VM"

    def __init__(self, metadata: str):
        self.metadata = metadata

    def run(self, bundle_dir: Path) -> None:
        out = self.directory(bundle_dir)
        shell.write_text(out / "metadata.json", self.metadata)
        shell.capture_to_file(["dmesg", "-T"], out / "dmesg.log")
        shell.copy_or_placeholder(WAAGENT_LOG, out / "waagent.log", "No waagent logs found")
        shell.capture_to_file(["lspci", "-vv"], out / "lspci.txt")
        self.collect_lsvmbus(out)
        shell.capture_to_file(["ip", "-s", "-h", "a"], out / "ifconfig.txt")
        shell.capture_to_file(["sysctl", "-a", "--ignore"], out / "sysctl.txt")
        shell.capture_to_file(["uname", "-a"], out / "uname.txt")
        shell.capture_to_file(["dmidecode"], out / "dmidecode.txt")
        self.collect_system_logs(out)

    def collect_lsvmbus(self, out: Path) -> None:
        dest = out / "lsvmbus.log"

        def native() -> bool:
            if not shell.command_exists("lsvmbus"):
                return False
            shell.capture_to_file(["lsvmbus", "-vv"], dest)
            return True

        def upstream_script() -> bool:
            LOG.info("no lsvmbus installed. pulling script from github")
            with tempfile.TemporaryDirectory() as tmp:
                script = download_file(LSVMBUS_URL, Path(tmp) / "lsvmbus")
                result = shell.run([sys.executable, script, "-vv"])
            shell.write_text(dest, result.stdout)
            return result.returncode == 0

        if not first_successful([native, upstream_script]):
            LOG.info("could neither find nor download lsvmbus")
            shell.write_text(dest, "could neither find nor download lsvmbus")

    def collect_system_logs(self, out: Path) -> None:
        def journal() -> bool:
            if not shell.command_exists("journalctl"):
                return False
            return shell.capture_to_file(["journalctl"], out / "journald.txt")

        if not first_successful(
            [
                journal,
                lambda: shell.copy_file(SYSLOG, out),
                lambda: shell.copy_file(MESSAGES_LOG, out),
            ]
        ):
            LOG.info("No system logs found")
            shell.write_text(out / "journald.txt", "No system logs found")


class CpuCollector(Collector):
    subdir = "CPU"

    def run(self, bundle_dir: Path) -> None:
        shell.capture_to_file(["lscpu"], self.directory(bundle_dir) / "lscpu.txt")


class MemoryCollector(Collector):
    """STREAM memory bandwidth benchmark, pinned per VM size."""

    subdir = "Memory"

    def __init__(self, vm_size: str):
        self.vm_size = vm_size

    def run(self, bundle_dir: Path) -> None:
        out = self.directory(bundle_dir)
        report = out / "stream.txt"
        package = out / "stream.tgz"
        try:
            try:
                download_file(STREAM_URL, package)
            except (requests.RequestException, OSError) as exc:
                LOG.info("Unable to download stream memory benchmark: %s", exc)
                shell.write_text(report, "Unable to download stream memory benchmark")
                return
            try:
                with tarfile.open(package, "r:gz") as tar:
                    tar.extractall(out, filter="data")
            except UNPACK_ERRORS as exc:
                LOG.info("Unable to unpack stream memory benchmark: %s", exc)
                shell.write_text(report, f"Unable to unpack stream memory benchmark: {exc}")
                return
            self.run_stream(out, report)
        finally:
            self.cleanup(out)

    def run_stream(self, out: Path, report: Path) -> None:
        stream_bin = out / "Stream" / "stream_zen_double"
        if not stream_bin.is_file():
            LOG.info("failed to unpack stream binary to %s, unable to run stream memory tests.", stream_bin)
            shell.write_text(report, f"failed to unpack stream binary to {stream_bin}")
            return

        cpu_list = get_cpu_list(self.vm_size)
        if cpu_list is None:
            LOG.info("Current VM Size is not supported for stream tests. skipping")
            shell.write_text(report, STREAM_UNSUPPORTED)
            return

        try:
            result = shell.run([stream_bin, STREAM_ARRAY_SIZE, *cpu_list])
        except OSError as exc:
            LOG.warning("Could not run %s: %s", stream_bin, exc)
            shell.write_text(report, f"Could not run stream benchmark: {exc}")
            return
        shell.write_text(report, result.stdout)

    @staticmethod
    def cleanup(out: Path) -> None:
        shutil.rmtree(out / "Stream", ignore_errors=True)
        (out / "._Stream").unlink(missing_ok=True)
        (out / "stream.tgz").unlink(missing_ok=True)


class InfinibandCollector(Collector):
    subdir = "Infiniband"

    def run(self, bundle_dir: Path) -> None:
        LOG.info("Infiniband VM Detected")
        out = self.directory(bundle_dir)

        if shell.copy_file(IB_EXTENSION_STATUS, out):
            LOG.info("Infiniband Driver Extension Detected")

        if not shell.command_exists("ibstat"):
            LOG.info("No Infiniband Driver Detected")
            shell.write_text(out / "ibstat.txt", "No Infiniband Driver Detected")
            return

        shell.capture_to_file(["ibstat"], out / "ibstat.txt")
        shell.capture_to_file(["ibv_devinfo", "-v"], out / "ibv_devinfo.txt")
        if not SYSFS_INFINIBAND.is_dir():
            return
        for device_dir in sorted(SYSFS_INFINIBAND.iterdir()):
            if device_dir.is_dir():
                self.collect_pkeys(device_dir, out)

    @staticmethod
    def collect_pkeys(device_dir: Path, out: Path) -> None:
        device = device_dir.name
        pkeys_out = out / device / "pkeys"
        pkeys_out.mkdir(parents=True, exist_ok=True)

        for pkey in sorted(device_dir.glob("ports/*/pkeys/*")):
            if not pkey.is_file():
                continue
            try:
                (pkeys_out / pkey.name).write_bytes(pkey.read_bytes())
            except OSError as exc:
                LOG.debug("Could not copy %s: %s", pkey, exc)

        for index in PKEY_INDICES:
            pkey_file = pkeys_out / str(index)
            if not pkey_file.is_file() or pkey_file.stat().st_size == 0:
                LOG.warning("Could not find pkey %d for %s", index, device)


class NvidiaCollector(Collector):
    subdir = "Nvidia"

    def __init__(
        self,
        gpu_level: GpuLevel = GpuLevel.QUICK,
        on_session: Optional[Callable[[GpuDiagnosticSession], None]] = None,
    ):
        self.gpu_level = gpu_level
        self.on_session = on_session

    def run(self, bundle_dir: Path) -> None:
        LOG.info("VM with Nvidia GPU Detected")
        out = self.directory(bundle_dir)

        if shell.copy_file(NVIDIA_EXTENSION_STATUS, out):
            LOG.info("Nvidia GPU Driver Extension Detected")

        if not shell.command_exists("nvidia-smi"):
            LOG.info("No Nvidia Driver Detected")
            shell.write_text(out / "nvidia-smi.txt", "No Nvidia Driver Detected")
            return

        shell.capture_to_file(["nvidia-smi", "-q"], out / "nvidia-smi.txt")
        self.collect_debugdump(out)

        if is_dcgm_installed():
            session = GpuDiagnosticSession(out, self.gpu_level)
            if self.on_session is not None:
                self.on_session(session)
            session.run()

    @staticmethod
    def collect_debugdump(out: Path) -> None:
        if not shell.command_exists("nvidia-debugdump"):
            LOG.info("nvidia-debugdump not found, skipping")
            return
        try:
            result = shell.run(["nvidia-debugdump", "--dumpall", "--file", out / "nvidia-debugdump.zip"])
        except STRATEGY_ERRORS as exc:
            LOG.warning("nvidia-debugdump failed: %s", exc)
            return
        if result.returncode != 0:
            LOG.warning("nvidia-debugdump exited with %s: %s", result.returncode, result.stderr.strip())


class AmdGpuCollector(Collector):
    """Placeholder until AMD GPU diagnostics exist.

    Writes nothing into the bundle; the notice only reaches the console and
    general.log.
    """

    subdir = None

    def run(self, bundle_dir: Path) -> None:
        LOG.info("AMD GPU diagnostics are not yet supported, skipping")
