from __future__ import annotations

"""
Hashed weight tables.

Both tables are addressed by a masked feature index in [0, 2**num_bits).
DenseWeights keeps a flat tensor (fast lookups, memory proportional to the table).
SparseWeights keeps only touched entries in a dict and reads absent ones as 0.0,
which is what large hash spaces with few active features want.
"""

from typing import Optional

import torch

Tensor = torch.Tensor


def _check_bits(num_bits: int) -> int:
    if not 1 <= int(num_bits) <= 62:
        raise ValueError(f"num_bits must be in [1, 62], got {num_bits}")
    return int(num_bits)


class DenseWeights:
    """Flat weight vector of size 2**num_bits."""

    def __init__(
        self,
        num_bits: int,
        *,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> None:
        self.num_bits = _check_bits(num_bits)
        self.device = device if device is not None else torch.device("cpu")
        self.dtype = dtype
        self.weights = torch.zeros(1 << self.num_bits, device=self.device, dtype=self.dtype)

    @property
    def mask(self) -> int:
        return (1 << self.num_bits) - 1

    def __len__(self) -> int:
        return int(self.weights.shape[0])

    def lookup(self, indices: Tensor) -> Tensor:
        idx = indices.to(device=self.device, dtype=torch.int64) & self.mask
        return self.weights.index_select(0, idx)

    def update(self, indices: Tensor, deltas: Tensor) -> None:
        """Add deltas into the table; repeated indices accumulate."""
        idx = indices.to(device=self.device, dtype=torch.int64) & self.mask
        self.weights.index_add_(0, idx, deltas.to(device=self.device, dtype=self.dtype))


class SparseWeights:
    """Dict-backed weight table; untouched entries are 0.0."""

    def __init__(self, num_bits: int, *, dtype: torch.dtype = torch.float32) -> None:
        self.num_bits = _check_bits(num_bits)
        self.dtype = dtype
        self._table: dict[int, float] = {}

    @property
    def mask(self) -> int:
        return (1 << self.num_bits) - 1

    def __len__(self) -> int:
        """Number of materialized (touched) entries."""
        return len(self._table)

    def lookup(self, indices: Tensor) -> Tensor:
        mask = self.mask
        values = [self._table.get(int(i) & mask, 0.0) for i in indices.tolist()]
        return torch.tensor(values, dtype=self.dtype)

    def update(self, indices: Tensor, deltas: Tensor) -> None:
        mask = self.mask
        for i, delta in zip(indices.tolist(), deltas.tolist()):
            key = int(i) & mask
            self._table[key] = self._table.get(key, 0.0) + float(delta)


__all__ = ["DenseWeights", "SparseWeights"]
