from __future__ import annotations

from typing import Optional

import torch

Tensor = torch.Tensor


def gram_schmidt(Y: Tensor, *, rtol: Optional[float] = None) -> Tensor:
    """
    Orthonormal basis of the column space of Y (modified Gram-Schmidt).

    Each column is orthogonalized against the basis built so far twice
    ("twice is enough"), which keeps Q^T Q = I to working precision even for
    nearly dependent inputs. Columns whose residual norm is at most
    rtol * (largest column norm of Y) are dropped instead of normalized.

    Args:
        Y: (m, k) matrix
        rtol: relative drop tolerance, default sqrt(eps) of Y's dtype

    Returns:
        Q: (m, r) with r <= k orthonormal columns, in the order of the columns of Y
           that survived. r may be 0.
    """
    if Y.ndim != 2:
        raise ValueError(f"gram_schmidt expects a 2D matrix, got shape {tuple(Y.shape)}")

    m, k = int(Y.shape[0]), int(Y.shape[1])
    if m == 0 or k == 0:
        return Y.new_zeros((m, 0))

    tol = torch.finfo(Y.dtype).eps ** 0.5 if rtol is None else float(rtol)
    scale = float(torch.linalg.vector_norm(Y, dim=0).max().item())
    if scale == 0.0:
        return Y.new_zeros((m, 0))

    basis: list[Tensor] = []
    for j in range(k):
        v = Y[:, j].clone()
        for _ in range(2):
            for q in basis:
                v = v - (q @ v) * q
        norm = float(torch.linalg.vector_norm(v).item())
        if norm > tol * scale:
            basis.append(v / norm)

    if not basis:
        return Y.new_zeros((m, 0))
    return torch.stack(basis, dim=1)


__all__ = ["gram_schmidt"]
