#!/usr/bin/env python3
"""Gather diagnostic info from an Azure HPC VM into a single tarball.

The tool runs a fixed sequence of collectors, each writing raw output of
pre-existing system utilities into its own directory of the bundle:

    <vm_id>.<timestamp>/
        general.log
        VM/          metadata.json, dmesg.log, waagent.log, lspci.txt,
                     lsvmbus.log, ifconfig.txt, sysctl.txt, uname.txt,
                     dmidecode.txt, journald.txt | syslog | messages
        CPU/         lscpu.txt
        Memory/      stream.txt                    (--mem-level > 0)
        Infiniband/  ib-vmext-status, ibstat.txt, ibv_devinfo.txt,
                     <device>/pkeys/{0,1}          (InfiniBand sizes)
        Nvidia/      nvidia-vmext-status, nvidia-smi.txt,
                     nvidia-debugdump.zip, dcgm-diag-<level>.log,
                     nvvs.log, stats_*.json        (Nvidia GPU sizes)

Usage examples::

    sudo python3 collect_diagnostics.py                   # bundle in the current directory
    sudo python3 collect_diagnostics.py --dir /opt/azurehpc/diagnostics
    sudo python3 collect_diagnostics.py --gpu-level 3 --mem-level 1

Missing tools and files are recorded as placeholder notes instead of failing,
and one collector failing never stops the others.  Interrupting the tool resets
any GPU state it changed before exiting.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, NoReturn, Optional, Sequence, Tuple

import psutil

from azure_endpoints import InstanceDescriptor, MetadataUnavailable, fetch_instance_descriptor
from bundle_archive import ArchiveError, build_archive, create_bundle_dir
from collectors import (
    AmdGpuCollector,
    Collector,
    CpuCollector,
    InfinibandCollector,
    MemoryCollector,
    NvidiaCollector,
    VmCollector,
)
from gpu_diagnostics import GpuDiagnosticSession, GpuLevel
from sku_capabilities import classify

LOG = logging.getLogger("collect_diagnostics")

VERSION_INFO = "0.0.1"
GENERAL_LOG = "general.log"
EXTENSION_SIGNATURE = "nvidia-vmext.sh enable"
PROJECT_URL = "https://github.com/Azure/azhpc-diagnostics"
SUPPORT_URL = "https://portal.azure.com/#blade/Microsoft_Azure_Support/HelpAndSupportBlade/managesupportrequest"

NOTICE = f"""\
Azure HPC Diagnostics Tool

NOTICES:

This tool generates and bundles together various logs and diagnostic information.
It, however, DOES NOT TRANSMIT any of said data.
It is left to the user to choose to transmit this data to Microsoft.

Some of this info, such as IP addresses, may be Personally Identifiable Information.
It is up to the user to redact any sensitive info from the output if necessary
before sending it to Microsoft.

This tool invokes various 3rd party tools if they are present on the system
Please review them and their EULAs at:
{PROJECT_URL}

WARNING: THINK BEFORE YOU RUN THIS
This tool runs benchmarks against system resource such as Memory and GPU.
Expect it to DEGRADE PERFORMANCE for or otherwise INTERFERE WITH
any other processes running on this system that use such resources.
It is advised that you DO NOT RUN THIS TOOL ALONGSIDE ANY OTHER JOBS on
the system.

Interrupt this tool at any time to force it to reset system state and terminate.
"""


class FatalError(Exception):
    """A precondition failed; the run cannot start."""


# ------------------------------ Configuration --------------------------------


@dataclass(frozen=True)
class RunConfig:
    output_root: Path
    gpu_level: GpuLevel = GpuLevel.QUICK
    mem_level: int = 0
    verbose: int = 0

    @property
    def memory_test_enabled(self) -> bool:
        return self.mem_level > 0

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "RunConfig":
        return cls(
            output_root=Path(args.dir).expanduser().resolve(),
            gpu_level=GpuLevel(args.gpu_level),
            mem_level=args.mem_level,
            verbose=args.verbose,
        )


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _run_level(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid run level: {value}. Should be integer.") from None


def _gpu_level(value: str) -> int:
    level = _run_level(value)
    if level not in {int(lvl) for lvl in GpuLevel}:
        raise argparse.ArgumentTypeError(f"Invalid run-level for dcgm: {value}. Should be 1, 2 or 3.")
    return level


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="azhpc-diagnostics",
        description=(
            "Gather diagnostic info for the current Azure HPC VM. "
            "Exports data into a tarball in the output directory."
        ),
        epilog=f"For more information on this tool and the data it gathers, visit {PROJECT_URL}",
    )
    parser.add_argument(
        "-d",
        "--dir",
        default=os.getcwd(),
        help="Custom output location. Default is the current directory.",
    )
    parser.add_argument(
        "--gpu-level",
        type=_gpu_level,
        default=int(GpuLevel.QUICK),
        help="dcgmi run level: 1 quick, 2 standard, 3 extended (default is 1).",
    )
    parser.add_argument(
        "--mem-level",
        type=_run_level,
        default=0,
        help="Set to 1 or higher to run the stream memory test (default is 0).",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Print more detail.")
    parser.add_argument("-V", "--version", action="version", version=VERSION_INFO)
    return parser


# ------------------------------ Logging helpers -------------------------------


def configure_logging(verbose: int) -> None:
    logging.basicConfig(format="%(message)s", stream=sys.stdout)
    # basicConfig is a no-op when the root logger already has handlers
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


def attach_general_log(bundle_dir: Path) -> logging.Handler:
    handler = logging.FileHandler(bundle_dir / GENERAL_LOG, encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logging.getLogger().addHandler(handler)
    return handler


def detach_general_log(handler: logging.Handler) -> None:
    logging.getLogger().removeHandler(handler)
    handler.close()


# ------------------------------ Preconditions --------------------------------


def is_root() -> bool:
    return os.geteuid() == 0


def find_extension_process() -> Optional[int]:
    """Return the pid of a running Nvidia VM extension installer, if any."""

    for proc in psutil.process_iter(attrs=["pid", "cmdline"]):
        cmdline = " ".join(proc.info.get("cmdline") or [])
        if EXTENSION_SIGNATURE in cmdline:
            return proc.info["pid"]
    return None


def confirm(prompt: str) -> bool:
    try:
        ans = input(f"{prompt} [y/N] ").strip().lower()
        return ans in {"y", "yes"}
    except (EOFError, KeyboardInterrupt):
        return False


def validate_out_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FatalError(f"Invalid output directory: {path} ({exc}).") from exc


# ------------------------------ Orchestration --------------------------------


class InterruptGuard:
    """SIGINT handler that puts the GPUs back before the tool exits.

    It is installed right after the user confirms and stays in place until the
    archive is written, so Ctrl-C at any point of the run ends with the abort
    banner and exit status 0 instead of a traceback.
    """

    def __init__(self) -> None:
        self.gpu_session: Optional[GpuDiagnosticSession] = None

    def track_gpu_session(self, session: GpuDiagnosticSession) -> None:
        self.gpu_session = session

    def reset_gpu_state(self) -> None:
        if self.gpu_session is not None:
            self.gpu_session.restore()

    def handle_interrupt(self, signum, frame) -> NoReturn:
        print("** Aborting Diagnostics")
        print("** Resetting system state")
        self.reset_gpu_state()
        print("** Done!")
        raise SystemExit(0)

    @contextmanager
    def installed(self) -> Iterator["InterruptGuard"]:
        previous = signal.signal(signal.SIGINT, self.handle_interrupt)
        try:
            yield self
        finally:
            signal.signal(signal.SIGINT, previous)


class DiagnosticRun:
    """One pass over the collectors for a single VM, ending in an archive."""

    def __init__(
        self,
        config: RunConfig,
        instance: InstanceDescriptor,
        bundle_dir: Path,
        guard: Optional[InterruptGuard] = None,
    ):
        self.config = config
        self.instance = instance
        self.bundle_dir = bundle_dir
        self.guard = guard or InterruptGuard()
        self.capabilities = classify(instance.vm_size)

    def plan(self) -> List[Tuple[str, Collector]]:
        steps: List[Tuple[str, Collector]] = [
            ("Gathering VM Info", VmCollector(self.instance.raw_metadata)),
            ("Gathering CPU Info", CpuCollector()),
        ]
        if self.config.memory_test_enabled:
            steps.append(("Running Memory Performance Test", MemoryCollector(self.instance.vm_size)))
        if self.capabilities.infiniband:
            steps.append(("Gathering Infiniband Info", InfinibandCollector()))
        if self.capabilities.nvidia_gpu:
            steps.append(
                (
                    "Running Nvidia GPU Diagnostics",
                    NvidiaCollector(self.config.gpu_level, on_session=self.guard.track_gpu_session),
                )
            )
        if self.capabilities.amd_gpu:
            steps.append(("Gathering AMD GPU Info", AmdGpuCollector()))
        return steps

    def collect(self) -> None:
        LOG.debug("VM size %r classified as %s", self.instance.vm_size, self.capabilities)
        for description, collector in self.plan():
            LOG.info(description)
            try:
                collector.run(self.bundle_dir)
            except Exception:
                LOG.exception("%s failed, continuing with the next collector", type(collector).__name__)

    def execute(self) -> Path:
        handler = attach_general_log(self.bundle_dir)
        try:
            self.collect()
        finally:
            detach_general_log(handler)
        return build_archive(self.bundle_dir)


def collect_bundle(config: RunConfig, guard: InterruptGuard) -> int:
    pid = find_extension_process()
    if pid is not None:
        raise FatalError(
            "Detected a VM Extension installation script running in the background\n"
            "Please wait for it to finish and retry\n"
            f"Extension pid: {pid}\n"
        )

    validate_out_dir(config.output_root)
    try:
        instance = fetch_instance_descriptor()
    except MetadataUnavailable as exc:
        raise FatalError(str(exc)) from exc

    bundle_dir = create_bundle_dir(config.output_root, instance.bundle_name)
    try:
        archive = DiagnosticRun(config, instance, bundle_dir, guard).execute()
    except ArchiveError as exc:
        print(f"ERROR: {exc}")
        print(f"Collected files were left in {exc.bundle_dir}")
        return 1

    print("Placing diagnostic files in the following location:")
    print(archive)
    print("If you have already opened a support request")
    print("You can take the tarball and follow this link to upload it")
    print(SUPPORT_URL)
    return 0


def run(config: RunConfig) -> int:
    if not is_root():
        raise FatalError("This script requires root privileges to run. Please run again with sudo")

    print(NOTICE)
    if not confirm("Please confirm that you understand."):
        print("No confirmation received")
        print("Exiting")
        return 0
    print("Thank you\n")

    with InterruptGuard().installed() as guard:
        return collect_bundle(config, guard)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = RunConfig.from_args(args)
    configure_logging(config.verbose)
    try:
        return run(config)
    except FatalError as exc:
        print(f"{exc} Exiting")
        return 1


if __name__ == "__main__":
    sys.exit(main())
