"""WGSL kernels for batched matrix operations

All kernels read and write packed, row-major batches: batch element `b` of
an (R, C) operand occupies elements [b*R*C, (b+1)*R*C).
"""

from .gpu_types import GPUConfig

ELEMENTWISE_OPS = {"add": "+", "sub": "-"}

# ============================================================================
# KERNEL GENERATORS
# ============================================================================


def create_batched_gemm_kernel(tile_size: int = 16) -> str:
    """
    Generate batched GEMM kernel: C[b] = alpha * op(A[b]) @ op(B[b]) + beta * C[b]

    One workgroup computes one tile_size x tile_size tile of one batch
    element; workgroup_id.z selects the batch element (offset by
    params.batch_offset when the batch is split across Z chunks).

    op(A) is (M, K) and op(B) is (K, N). With trans_a set, A is stored
    as (K, M); with trans_b set, B is stored as (N, K).

    Args:
        tile_size: Tile dimension (must be power of 2, at most 32)

    Returns:
        WGSL kernel source code as string

    Raises:
        ValueError: If tile_size is invalid
    """
    if tile_size <= 0 or (tile_size & (tile_size - 1)) != 0:
        raise ValueError(f"tile_size must be power of 2, got {tile_size}")

    if tile_size > 32:
        raise ValueError(f"tile_size too large: {tile_size}. Maximum is 32.")

    return f"""
// Batched tiled GEMM, tile size {tile_size}x{tile_size}

struct GemmParams {{
    M: u32,
    N: u32,
    K: u32,
    batch_offset: u32,
    trans_a: u32,
    trans_b: u32,
    alpha_bits: u32,
    beta_bits: u32,
}}

@group(0) @binding(0) var<uniform> params: GemmParams;
@group(0) @binding(1) var<storage, read> A: array<f32>;
@group(0) @binding(2) var<storage, read> B: array<f32>;
@group(0) @binding(3) var<storage, read_write> C: array<f32>;

const TILE_SIZE: u32 = {tile_size}u;

var<workgroup> tile_A: array<f32, {tile_size * tile_size}>;
var<workgroup> tile_B: array<f32, {tile_size * tile_size}>;

fn load_a(base: u32, row: u32, col: u32) -> f32 {{
    if (params.trans_a != 0u) {{
        return A[base + col * params.M + row];
    }}
    return A[base + row * params.K + col];
}}

fn load_b(base: u32, row: u32, col: u32) -> f32 {{
    if (params.trans_b != 0u) {{
        return B[base + col * params.K + row];
    }}
    return B[base + row * params.N + col];
}}

@compute @workgroup_size({tile_size}, {tile_size})
fn main(
    @builtin(global_invocation_id) global_id: vec3<u32>,
    @builtin(local_invocation_id) local_id: vec3<u32>,
    @builtin(workgroup_id) group_id: vec3<u32>
) {{
    let row = global_id.y;
    let col = global_id.x;
    let local_row = local_id.y;
    let local_col = local_id.x;

    let batch = params.batch_offset + group_id.z;
    let a_base = batch * params.M * params.K;
    let b_base = batch * params.K * params.N;
    let c_base = batch * params.M * params.N;

    var sum = 0.0;

    let num_tiles = (params.K + TILE_SIZE - 1u) / TILE_SIZE;

    for (var t = 0u; t < num_tiles; t++) {{
        let a_col = t * TILE_SIZE + local_col;
        if (row < params.M && a_col < params.K) {{
            tile_A[local_row * TILE_SIZE + local_col] = load_a(a_base, row, a_col);
        }} else {{
            tile_A[local_row * TILE_SIZE + local_col] = 0.0;
        }}

        let b_row = t * TILE_SIZE + local_row;
        if (b_row < params.K && col < params.N) {{
            tile_B[local_row * TILE_SIZE + local_col] = load_b(b_base, b_row, col);
        }} else {{
            tile_B[local_row * TILE_SIZE + local_col] = 0.0;
        }}

        workgroupBarrier();

        for (var k = 0u; k < TILE_SIZE; k++) {{
            sum += tile_A[local_row * TILE_SIZE + k] * tile_B[k * TILE_SIZE + local_col];
        }}

        workgroupBarrier();
    }}

    if (row < params.M && col < params.N) {{
        let idx = c_base + row * params.N + col;
        let alpha = bitcast<f32>(params.alpha_bits);
        let beta = bitcast<f32>(params.beta_bits);
        var value = alpha * sum;
        // C holds zeros or the accumulator; skip the read when beta is zero
        if (beta != 0.0) {{
            value += beta * C[idx];
        }}
        C[idx] = value;
    }}
}}
"""


def create_batched_elementwise_kernel(op: str, workgroup_size: int = 256) -> str:
    """
    Generate flat elementwise kernel Out = A (op) B over a packed batch.

    The dispatch grid is 2-D so batches larger than
    workgroup_size * max_workgroups_per_dim elements still fit;
    params.row_stride is the number of invocations per grid row.

    Args:
        op: "add" or "sub"
        workgroup_size: Threads per workgroup (at most 256)

    Returns:
        WGSL kernel source code as string

    Raises:
        ValueError: If op or workgroup_size is invalid
    """
    if op not in ELEMENTWISE_OPS:
        raise ValueError(f"op must be one of {sorted(ELEMENTWISE_OPS)}, got {op!r}")

    if workgroup_size <= 0 or workgroup_size > 256:
        raise ValueError(f"workgroup_size must be in (0, 256], got {workgroup_size}")

    return f"""
// Batched elementwise {op}

struct ElementwiseParams {{
    total: u32,
    row_stride: u32,
    _pad0: u32,
    _pad1: u32,
}}

@group(0) @binding(0) var<uniform> params: ElementwiseParams;
@group(0) @binding(1) var<storage, read> A: array<f32>;
@group(0) @binding(2) var<storage, read> B: array<f32>;
@group(0) @binding(3) var<storage, read_write> Out: array<f32>;

@compute @workgroup_size({workgroup_size})
fn main(@builtin(global_invocation_id) global_id: vec3<u32>) {{
    let idx = global_id.y * params.row_stride + global_id.x;
    if (idx >= params.total) {{
        return;
    }}
    Out[idx] = A[idx] {ELEMENTWISE_OPS[op]} B[idx];
}}
"""


# ============================================================================
# CONFIG ACCESSORS
# ============================================================================


def get_batched_gemm_kernel_from_config(config: GPUConfig) -> str:
    """Get batched GEMM kernel configured from GPUConfig"""
    return create_batched_gemm_kernel(config.matmul_tile_size)


def get_batched_elementwise_kernel_from_config(config: GPUConfig, op: str) -> str:
    """Get batched elementwise kernel configured from GPUConfig"""
    return create_batched_elementwise_kernel(op, config.default_workgroup_size)
