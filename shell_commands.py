"""Thin wrappers around the external tools the collectors shell out to.

Every collector step is a read-only command whose stdout lands in a file of the
bundle.  When a tool is missing on the host the wrappers record that fact in
the target file instead of failing, which keeps the tool safe to run on
minimal distributions and on VM sizes without the optional hardware.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import IO, Optional, Sequence

LOG = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def command_env() -> dict:
    env = os.environ.copy()
    if not env.get("PATH"):
        env["PATH"] = DEFAULT_PATH
    return env


def command_exists(name: str) -> bool:
    """Return True when ``name`` resolves to an executable on PATH."""

    return shutil.which(name, path=command_env()["PATH"]) is not None


def run(
    args: Sequence[str],
    *,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
    stdout: Optional[IO[str]] = None,
) -> subprocess.CompletedProcess:
    """Run ``args`` and capture stdout/stderr as text.

    When ``stdout`` is an open file the command writes straight into it and
    only stderr is captured.  ``subprocess.TimeoutExpired`` and ``OSError``
    propagate to the caller.
    """

    LOG.debug("$ %s", " ".join(str(a) for a in args))
    return subprocess.run(
        [str(a) for a in args],
        check=False,
        stdout=subprocess.PIPE if stdout is None else stdout,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        env=command_env(),
        timeout=timeout,
        cwd=str(cwd) if cwd is not None else None,
    )


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if content and not content.endswith("\n"):
        content += "\n"
    path.write_text(content, encoding="utf-8", errors="replace")


def capture_to_file(
    args: Sequence[str],
    dest: Path,
    *,
    placeholder: Optional[str] = None,
    timeout: Optional[float] = None,
) -> bool:
    """Stream the stdout of ``args`` into ``dest``.

    Returns True only when the command exists and exits 0.  A missing command
    or a command that cannot be started leaves a placeholder note in ``dest``.
    Output is never held in memory, so unbounded dumps such as the journal are
    safe to capture.
    """

    name = str(args[0])
    if not command_exists(name):
        LOG.info("%s not found, skipping", name)
        write_text(dest, placeholder or f"{name} not found")
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        with dest.open("w", encoding="utf-8", errors="replace") as output:
            result = run(args, timeout=timeout, stdout=output)
    except subprocess.TimeoutExpired:
        LOG.warning("%s timed out after %ss", name, timeout)
        with dest.open("a", encoding="utf-8") as output:
            output.write(f"\n{name} timed out after {timeout}s\n")
        return False
    except OSError as exc:
        LOG.warning("failed to run %s: %s", name, exc)
        write_text(dest, f"failed to run {name}: {exc}")
        return False

    if result.returncode != 0:
        LOG.debug("%s exited with %s: %s", name, result.returncode, (result.stderr or "").strip())
    return result.returncode == 0


def copy_file(src: Path, dest_dir: Path) -> bool:
    """Copy ``src`` into ``dest_dir`` if it is a regular file."""

    if not src.is_file():
        return False
    dest_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dest_dir / src.name)
    return True


def copy_or_placeholder(src: Path, dest: Path, placeholder: str) -> bool:
    if src.is_file():
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
        return True
    write_text(dest, placeholder)
    return False
