"""Device management and pipeline caching"""

import hashlib
import logging
from typing import Dict, List, Optional

from .gpu_config import auto_detect_config, validate_config
from .gpu_types import (
    BindGroupEntry,
    Device,
    GPUConfig,
    PipelineCache,
    WGPUComputePipeline,
)

try:
    import wgpu

    WGPU_AVAILABLE = True
except ImportError:
    WGPU_AVAILABLE = False
    wgpu = None

logger = logging.getLogger(__name__)

# ============================================================================
# BIND GROUP HELPERS
# ============================================================================


def create_bind_group_entries(entries: List[BindGroupEntry]) -> List[Dict]:
    """Convert typed BindGroupEntry list to wgpu bind group entry format.

    This function does NOT mutate entries - it creates new dictionaries.

    Args:
        entries: List of BindGroupEntry specifications

    Returns:
        New list of dictionaries in wgpu bind group format
    """
    return [
        {
            "binding": entry.binding,
            "resource": {
                "buffer": entry.buffer,
                "offset": entry.offset,
                "size": entry.size,
            },
        }
        for entry in entries
    ]


# ============================================================================
# DEVICE MANAGEMENT
# ============================================================================


def create_device(config: Optional[GPUConfig] = None) -> Optional[Device]:
    """Create a new WGPU device.

    Requests an adapter with the configured power preference and falls back
    to the default adapter when none matches. When no config is given one is
    auto-detected from the device limits.

    Args:
        config: Optional GPU configuration (validated before use)

    Returns:
        Device state if successful, None if WGPU unavailable or initialization fails
    """
    if config is not None:
        validate_config(config)

    if not WGPU_AVAILABLE:
        logger.warning("wgpu is not installed, no GPU device available")
        return None

    power_preference = config.power_preference if config else "high-performance"

    try:
        adapter = wgpu.gpu.request_adapter_sync(power_preference=power_preference)
        if adapter is None:
            adapter = wgpu.gpu.request_adapter_sync()
        if adapter is None:
            logger.warning("WGPU initialization failed: no adapter found")
            return None
        wgpu_device = adapter.request_device_sync()
    except Exception as e:
        logger.warning("WGPU initialization failed: %s", e)
        return None

    if config is None:
        config = auto_detect_config(adapter, wgpu_device)

    logger.info("WGPU device initialized (%s)", power_preference)
    return Device(wgpu_device=wgpu_device, adapter=adapter, config=config)


def destroy_device(device: Device) -> None:
    """Release the underlying wgpu device.

    Buffers created on the device must not be used afterwards.
    """
    destroy = getattr(device.wgpu_device, "destroy", None)
    if destroy is not None:
        destroy()
    logger.info("WGPU device destroyed")


# ============================================================================
# PIPELINE CACHE
# ============================================================================


def create_pipeline_cache(device: Device) -> PipelineCache:
    """Create a new pipeline cache for the given device.

    Args:
        device: GPU device state

    Returns:
        New empty pipeline cache for caching compiled shaders
    """
    return PipelineCache(device=device)


def get_or_create_pipeline(
    pipeline_cache: PipelineCache, shader_code: str
) -> WGPUComputePipeline:
    """Cache compute pipelines to avoid recompilation (mutation).

    This function MUTATES pipeline_cache.pipelines by adding new pipelines.

    Uses SHA256 of the shader source as the cache key.

    Args:
        pipeline_cache: Pipeline cache state (MUTATED if pipeline not cached)
        shader_code: WGSL shader source code

    Returns:
        Cached or newly compiled compute pipeline
    """
    device = pipeline_cache.device

    shader_hash = hashlib.sha256(shader_code.encode("utf-8")).hexdigest()
    cache_key = (id(device.wgpu_device), shader_hash)

    if cache_key not in pipeline_cache.pipelines:
        logger.debug("compiling compute pipeline %s", shader_hash[:12])
        shader_module = device.wgpu_device.create_shader_module(code=shader_code)
        pipeline = device.wgpu_device.create_compute_pipeline(
            layout="auto",
            compute={
                "module": shader_module,
                "entry_point": "main",
            },
        )
        pipeline_cache.pipelines[cache_key] = pipeline

    return pipeline_cache.pipelines[cache_key]
