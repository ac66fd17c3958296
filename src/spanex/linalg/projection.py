from __future__ import annotations

"""
Deterministic Gaussian-like projection values.

gaussian(seed, index) is a pure function: the same (seed, index) always gives the
same value, on any thread, with no generator object to store or serialize.
This is what lets the randomized SVD engines rebuild their random test matrices
from indices alone and lets worker threads compute disjoint slices of them.

Construction:
  - the index is offset by the seed and hashed with a 48-bit xor-shift/multiply
    mixer. All arithmetic stays below 2**63 (products are split into 24-bit
    limbs), so int64 tensors evaluate it exactly, with no overflow.
  - the 48 mixed bits become two 24-bit uniforms, mapped to N(0, 1) by Box-Muller.
"""

import math
from typing import Union

import torch

Tensor = torch.Tensor

MASK48 = (1 << 48) - 1
_LOW24 = (1 << 24) - 1
_SCALE24 = float(1 << 24)
_MIX_K1 = 0x476D1CE4E5B9
_MIX_K2 = 0x49BB133111EB


def _mul48(x: Tensor, k: int) -> Tensor:
    """(x * k) mod 2**48 for x in [0, 2**48), computed with 24-bit limbs."""
    kl, kh = k & _LOW24, k >> 24
    xl = x & _LOW24
    xh = x >> 24
    lo = xl * kl
    mid = ((xh * kl + xl * kh) & _LOW24) << 24
    return (lo + mid) & MASK48


def _mix48(x: Tensor) -> Tensor:
    x = x & MASK48
    x = x ^ (x >> 24)
    x = _mul48(x, _MIX_K1)
    x = x ^ (x >> 21)
    x = _mul48(x, _MIX_K2)
    return x ^ (x >> 24)


def derive_seed(seed: int, *salts: int) -> int:
    """
    Derive a new 48-bit seed from a seed and any number of integer salts.

    Used for per-round seeds (salt = round counter) and for independent
    streams inside one computation.
    """
    h = torch.tensor(int(seed) & MASK48, dtype=torch.int64)
    for salt in salts:
        h = _mix48(h ^ (int(salt) & MASK48))
    return int(_mix48(h).item())


def gaussian(
    seed: int,
    index: Union[int, Tensor],
    *,
    dtype: torch.dtype = torch.float64,
) -> Tensor:
    """
    Standard-normal-like value(s) for integer index(es) under a seed.

    Args:
        seed: any integer; only its low 48 bits matter
        index: non-negative int or int64 tensor (< 2**62)

    Returns:
        tensor with the same shape as index
    """
    idx = torch.as_tensor(index, dtype=torch.int64)
    h = _mix48(idx + (int(seed) & MASK48))

    u1 = ((h >> 24).to(torch.float64) + 0.5) / _SCALE24  # in (0, 1), log-safe
    u2 = (h & _LOW24).to(torch.float64) / _SCALE24
    z = torch.sqrt(-2.0 * torch.log(u1)) * torch.cos((2.0 * math.pi) * u2)
    return z.to(dtype)


def projection_matrix(
    seed: int,
    row_ids: Union[Tensor, list[int]],
    width: int,
    *,
    dtype: torch.dtype = torch.float64,
) -> Tensor:
    """
    Rows of an implicit (n x width) Gaussian matrix.

    Entry (r, j) = gaussian(seed, row_ids[r] * width + j), so any subset of rows
    can be materialized independently and always agrees with the full matrix.

    Returns:
        tensor of shape (len(row_ids), width)
    """
    if int(width) < 0:
        raise ValueError(f"width must be >= 0, got {width}")
    rid = torch.as_tensor(row_ids, dtype=torch.int64).reshape(-1, 1)
    cid = torch.arange(int(width), dtype=torch.int64).reshape(1, -1)
    return gaussian(seed, rid * int(width) + cid, dtype=dtype)


__all__ = ["MASK48", "derive_seed", "gaussian", "projection_matrix"]
