"""GPU configuration and auto-tuning"""

import logging
from typing import Optional

from .gpu_types import GPUConfig, WGPUAdapter, WGPUDevice

logger = logging.getLogger(__name__)


def create_default_config() -> GPUConfig:
    """
    Create default GPU configuration with conservative settings.

    These settings work on most GPUs but may not be optimal for all hardware.
    For automatic optimization, use auto_detect_config() instead.

    Returns:
        GPUConfig with default parameters
    """
    return GPUConfig()


def _limit(limits, name: str, default: int) -> int:
    """Read a device limit from either the wgpu dict form or attribute form"""
    if isinstance(limits, dict):
        return int(limits.get(name, limits.get(name.replace("-", "_"), default)))
    return int(getattr(limits, name.replace("-", "_"), default))


def auto_detect_config(adapter: WGPUAdapter, device: WGPUDevice) -> GPUConfig:
    """
    Auto-detect GPU capabilities and return optimized configuration.

    Queries device limits to pick the GEMM tile size, the elementwise
    workgroup size, the per-dimension dispatch limit and pool sizes.
    Falls back to conservative defaults for any limit that is missing.

    Args:
        adapter: WGPU adapter (from wgpu.gpu.request_adapter_sync())
        device: WGPU device (from adapter.request_device_sync())

    Returns:
        GPUConfig optimized for the detected GPU

    Example:
        >>> import wgpu
        >>> adapter = wgpu.gpu.request_adapter_sync()
        >>> device = adapter.request_device_sync()
        >>> config = auto_detect_config(adapter, device)
    """
    limits = getattr(device, "limits", {}) or {}

    # ========================================================================
    # Workgroup size
    # ========================================================================
    max_workgroup_size_x = _limit(limits, "max-compute-workgroup-size-x", 256)
    max_invocations = _limit(limits, "max-compute-invocations-per-workgroup", 256)

    if min(max_workgroup_size_x, max_invocations) >= 256:
        default_wg = 256
    elif min(max_workgroup_size_x, max_invocations) >= 128:
        default_wg = 128
    else:
        default_wg = 64  # Low-end GPU

    # ========================================================================
    # GEMM tile size
    # ========================================================================
    # Two tiles (A and B) of tile_size^2 * 4 bytes each
    max_workgroup_storage_size = _limit(
        limits, "max-compute-workgroup-storage-size", 16384
    )

    if max_workgroup_storage_size >= 32 * 32 * 2 * 4 and max_invocations >= 32 * 32:
        matmul_tile = 32
    elif max_workgroup_storage_size >= 16 * 16 * 2 * 4 and max_invocations >= 16 * 16:
        matmul_tile = 16
    else:
        matmul_tile = 8

    # ========================================================================
    # Dispatch and memory limits
    # ========================================================================
    max_workgroups = _limit(limits, "max-compute-workgroups-per-dimension", 65535)

    # WebGPU does not expose total memory; max buffer size is the best proxy
    max_buffer_size = _limit(limits, "max-buffer-size", 2**28)

    if max_buffer_size >= 2 * 2**30:
        buffer_pool_mb = 1024
    elif max_buffer_size >= 2**30:
        buffer_pool_mb = 512
    else:
        buffer_pool_mb = 256

    config = GPUConfig(
        matmul_tile_size=matmul_tile,
        default_workgroup_size=default_wg,
        buffer_pool_max_mb=buffer_pool_mb,
        buffer_pool_max_buffer_mb=min(buffer_pool_mb, max_buffer_size // 2**20),
        max_workgroups_per_dim=max_workgroups,
    )
    logger.debug("auto-detected GPU config: %s", config)
    return config


def create_config_for_device(device_name: Optional[str] = None) -> GPUConfig:
    """
    Create GPU configuration tuned for a device family by name.

    **Note**: This function uses heuristics. For accurate detection,
    use auto_detect_config() with actual WGPU adapter/device objects.

    Args:
        device_name: GPU device name (e.g., "NVIDIA RTX 4090", "Apple M2")
                    None = use defaults

    Returns:
        GPUConfig tuned for the specified device
    """
    if device_name is None:
        return create_default_config()

    device_lower = device_name.lower()

    if "nvidia" in device_lower or "geforce" in device_lower or "rtx" in device_lower:
        return GPUConfig(
            matmul_tile_size=16,
            default_workgroup_size=256,
            buffer_pool_max_mb=1024,
            buffer_pool_max_buffer_mb=1024,
        )
    elif "amd" in device_lower or "radeon" in device_lower:
        return GPUConfig(
            matmul_tile_size=16,
            default_workgroup_size=256,
            buffer_pool_max_mb=512,
            buffer_pool_max_buffer_mb=512,
        )
    elif "intel" in device_lower:
        return GPUConfig(
            matmul_tile_size=8,  # Integrated GPUs have less workgroup memory
            default_workgroup_size=128,
            buffer_pool_max_mb=256,
            buffer_pool_max_buffer_mb=256,
        )
    elif "apple" in device_lower:
        return GPUConfig(
            matmul_tile_size=16,
            default_workgroup_size=256,
            buffer_pool_max_mb=1024,  # Unified memory
            buffer_pool_max_buffer_mb=512,
        )
    else:
        return create_default_config()


def validate_config(config: GPUConfig) -> None:
    """
    Validate GPU configuration for correctness.

    Args:
        config: Configuration to validate

    Raises:
        ValueError: If any parameter is invalid
    """
    if (
        config.matmul_tile_size <= 0
        or (config.matmul_tile_size & (config.matmul_tile_size - 1)) != 0
    ):
        raise ValueError(
            f"matmul_tile_size must be power of 2, got {config.matmul_tile_size}"
        )

    if config.matmul_tile_size > 32:
        raise ValueError(
            f"matmul_tile_size too large: {config.matmul_tile_size}. "
            "Maximum is 32 due to workgroup memory limits."
        )

    if config.default_workgroup_size <= 0 or config.default_workgroup_size > 256:
        raise ValueError(
            f"default_workgroup_size must be in (0, 256], got {config.default_workgroup_size}"
        )

    if config.buffer_pool_max_mb < 0:
        raise ValueError(
            f"buffer_pool_max_mb must be non-negative, got {config.buffer_pool_max_mb}"
        )

    if config.buffer_pool_max_buffer_mb < 0:
        raise ValueError(
            f"buffer_pool_max_buffer_mb must be non-negative, got {config.buffer_pool_max_buffer_mb}"
        )

    if config.staging_buffer_max_entries <= 0:
        raise ValueError(
            f"staging_buffer_max_entries must be positive, got {config.staging_buffer_max_entries}"
        )

    if config.max_workgroups_per_dim <= 0:
        raise ValueError(
            f"max_workgroups_per_dim must be positive, got {config.max_workgroups_per_dim}"
        )

    if config.max_batch_operations <= 0:
        raise ValueError(
            f"max_batch_operations must be positive, got {config.max_batch_operations}"
        )

    if config.power_preference not in ("high-performance", "low-power"):
        raise ValueError(
            f"power_preference must be 'high-performance' or 'low-power', "
            f"got {config.power_preference!r}"
        )


def estimate_shared_memory_usage(config: GPUConfig) -> dict:
    """
    Estimate workgroup memory usage for each kernel, in bytes.

    Args:
        config: GPU configuration

    Returns:
        Dictionary with estimates keyed by kernel name
    """
    return {
        "batched_gemm": config.matmul_tile_size * config.matmul_tile_size * 2 * 4,
        "batched_elementwise": 0,
    }
