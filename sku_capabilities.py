"""Decide which optional hardware collectors apply to a VM size."""

from __future__ import annotations

import re
from dataclasses import dataclass

# Constrained-bandwidth / RDMA sizes carry an "r" right after the core count,
# e.g. Standard_HB120rs_v2 or Standard_H16r.
INFINIBAND_PATTERN = re.compile(r"\dr", re.IGNORECASE)
GPU_FAMILY_PATTERN = re.compile(r"^Standard_N", re.IGNORECASE)
VISUALIZATION_PATTERN = re.compile(r"^Standard_NV", re.IGNORECASE)
AMD_GPU_PATTERN = re.compile(r"^Standard_NV.*_v4", re.IGNORECASE)


@dataclass(frozen=True)
class SkuCapabilities:
    infiniband: bool = False
    nvidia_gpu: bool = False
    amd_gpu: bool = False
    gpu_visualization: bool = False


def is_infiniband_sku(vm_size: str) -> bool:
    return INFINIBAND_PATTERN.search(vm_size) is not None


def is_amd_gpu_sku(vm_size: str) -> bool:
    return AMD_GPU_PATTERN.search(vm_size) is not None


def is_nvidia_sku(vm_size: str) -> bool:
    return GPU_FAMILY_PATTERN.search(vm_size) is not None and not is_amd_gpu_sku(vm_size)


def is_vis_sku(vm_size: str) -> bool:
    return VISUALIZATION_PATTERN.search(vm_size) is not None


def classify(vm_size) -> SkuCapabilities:
    """Classify ``vm_size``; anything that is not a non-empty string has no capabilities."""

    if not isinstance(vm_size, str) or not vm_size.strip():
        return SkuCapabilities()
    vm_size = vm_size.strip()
    return SkuCapabilities(
        infiniband=is_infiniband_sku(vm_size),
        nvidia_gpu=is_nvidia_sku(vm_size),
        amd_gpu=is_amd_gpu_sku(vm_size),
        gpu_visualization=is_vis_sku(vm_size),
    )
