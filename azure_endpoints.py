"""HTTP endpoints consumed by the diagnostics tool.

The instance metadata service is the only mandatory one: without it there is
no VM size to classify and no VM id to name the bundle after.  The other two
URLs are optional downloads that collectors fall back to.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import requests

LOG = logging.getLogger(__name__)

# -------------------------- Config -------------------------------------------

METADATA_URL = os.getenv(
    "AZHPC_METADATA_URL",
    "http://169.254.169.254/metadata/instance?api-version=2020-06-01",
)
STREAM_URL = os.getenv(
    "AZHPC_STREAM_URL",
    "https://azhpcstor.blob.core.windows.net/diagtool-binaries/stream.tgz",
)
LSVMBUS_URL = os.getenv(
    "AZHPC_LSVMBUS_URL",
    "https://raw.githubusercontent.com/torvalds/linux/master/tools/hv/lsvmbus",
)
METADATA_TIMEOUT = 10
DOWNLOAD_TIMEOUT = 60

TIMESTAMP_FORMAT = "%Y-%m-%d.UTC%H.%M.%S"


class MetadataUnavailable(Exception):
    """Raised when the instance metadata service cannot be reached."""


@dataclass(frozen=True)
class InstanceDescriptor:
    vm_size: str
    vm_id: str
    timestamp: str
    raw_metadata: str

    @property
    def bundle_name(self) -> str:
        return f"{self.vm_id}.{self.timestamp}"


def utc_timestamp(now: Optional[_dt.datetime] = None) -> str:
    now = now or _dt.datetime.now(tz=_dt.timezone.utc)
    return now.strftime(TIMESTAMP_FORMAT)


def find_key(document: Any, key: str) -> Optional[str]:
    """Depth-first lookup of ``key`` anywhere in a decoded JSON document."""

    if isinstance(document, dict):
        value = document.get(key)
        if isinstance(value, str):
            return value
        for child in document.values():
            found = find_key(child, key)
            if found is not None:
                return found
    elif isinstance(document, list):
        for child in document:
            found = find_key(child, key)
            if found is not None:
                return found
    return None


def parse_instance_descriptor(raw: str, timestamp: Optional[str] = None) -> InstanceDescriptor:
    try:
        document = json.loads(raw)
    except ValueError:
        LOG.warning("Instance metadata is not valid JSON")
        document = {}
    vm_size = find_key(document, "vmSize") or ""
    vm_id = find_key(document, "vmId")
    if not vm_id:
        LOG.warning("Instance metadata has no vmId, naming bundle 'unknown'")
        vm_id = "unknown"
    return InstanceDescriptor(
        vm_size=vm_size,
        vm_id=vm_id,
        timestamp=timestamp or utc_timestamp(),
        raw_metadata=raw,
    )


def fetch_instance_descriptor(url: str = METADATA_URL) -> InstanceDescriptor:
    try:
        response = requests.get(url, headers={"Metadata": "true"}, timeout=METADATA_TIMEOUT)
        response.raise_for_status()
    except requests.exceptions.RequestException as exc:
        raise MetadataUnavailable(f"Couldn't connect to Azure IMDS: {exc}") from exc
    return parse_instance_descriptor(response.text)


def download_file(url: str, dest: Path, timeout: float = DOWNLOAD_TIMEOUT) -> Path:
    """Stream ``url`` into ``dest``; ``requests.RequestException`` propagates."""

    LOG.debug("Downloading %s to %s", url, dest)
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        dest.parent.mkdir(parents=True, exist_ok=True)
        with dest.open("wb") as fp:
            for chunk in response.iter_content(chunk_size=1 << 16):
                fp.write(chunk)
    return dest
