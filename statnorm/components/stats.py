"""Statistics helpers shared by the batch and memory normalizers."""

from typing import Tuple

import torch

# Statistics are accumulated in double precision regardless of input dtype.
STATS_DTYPE = torch.float64


def as_blocks(x: torch.Tensor, block_dim: int) -> torch.Tensor:
    """View a [rows, dim] matrix as [rows * dim / block_dim, block_dim].

    Each block of ``block_dim`` consecutive columns becomes its own row, so
    statistics for the n'th element of every block are pooled together.
    """
    if x.shape[-1] == block_dim:
        return x
    return x.contiguous().view(-1, block_dim)


def num_frames(x: torch.Tensor, block_dim: int) -> int:
    return x.shape[0] * (x.shape[1] // block_dim)


def minibatch_stats(x: torch.Tensor) -> Tuple[int, torch.Tensor, torch.Tensor]:
    """Return (count, sum, sum_of_squares) over the rows of a blocked matrix."""
    x = x.to(STATS_DTYPE)
    return x.shape[0], x.sum(dim=0), (x * x).sum(dim=0)


def compute_offset_and_scale(
    count: float,
    epsilon: float,
    target_rms: float,
    stats_sum: torch.Tensor,
    stats_sumsq: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Turn raw (count, sum, sumsq) stats into a normalizing transform.

    The transform is ``y = x * scale + offset`` with
    ``scale = target_rms / sqrt(var + epsilon)`` and ``offset = -mean * scale``.
    The variance is floored at zero, since ``uvar - mean^2`` can go slightly
    negative from round-off.

    Args:
        count: Number of frames the stats were accumulated over (> 0)
        epsilon: Added to the variance
        target_rms: Desired standard deviation of the output
        stats_sum: Sum of the data, [block_dim]
        stats_sumsq: Sum of the squared data, [block_dim]

    Returns:
        (offset, scale), each [block_dim] in double precision
    """
    mean = stats_sum.to(STATS_DTYPE) / count
    uvar = stats_sumsq.to(STATS_DTYPE) / count
    var = (uvar - mean * mean).clamp_min(0.0)
    scale = target_rms * torch.rsqrt(var + epsilon)
    offset = -mean * scale
    return offset, scale


def apply_affine(x: torch.Tensor, scale: torch.Tensor, offset: torch.Tensor) -> torch.Tensor:
    """Compute ``x * scale + offset`` on a blocked matrix in the input dtype."""
    return torch.addcmul(
        offset.to(device=x.device, dtype=x.dtype),
        x,
        scale.to(device=x.device, dtype=x.dtype),
    )
