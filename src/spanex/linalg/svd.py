from __future__ import annotations

"""
Randomized low-rank engines.

Both engines approximate the top left singular subspace of diag(shrink) @ A, where
A is the sparse action-by-feature matrix of the current batch, and return
(U, S): U has one row per action and at most d columns, S holds the matching
singular value estimates in descending order.

  - OnePassSVD: a single sketch Y = diag(shrink) A Omega. Fast; the rows of Y are
    independent, so they are computed in fixed-size row blocks on a thread pool
    owned by the engine.
  - TwoPassSVD: range finder on A^T, a second pass through A, an extra Gaussian
    mixing step and re-orthonormalization (optionally with power iterations).
    Slower, noticeably more accurate.

All random test matrices come from spanex.linalg.projection and are therefore pure
functions of (seed, index): nothing random is stored between calls.

Degenerate input (a matrix with a zero dimension, or a sketch that collapses to
nothing) is not an error: the engines return LowRankFactors.empty().
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Protocol, TypeGuard, Union, runtime_checkable

import torch

from spanex.linalg.orthogonal import gram_schmidt
from spanex.linalg.projection import derive_seed, projection_matrix

Tensor = torch.Tensor

logger = logging.getLogger(__name__)

# Salt for the d x d mixing matrix of the two-pass engine, so it never shares
# values with the range-finder test matrix drawn under the same round seed.
_MIXING_STREAM = 1


@dataclass(frozen=True)
class LowRankFactors:
    """U: (num_actions, k) with k <= d; S: (k,) descending."""
    U: Tensor
    S: Tensor

    @classmethod
    def empty(cls, dtype: torch.dtype = torch.float32) -> "LowRankFactors":
        return cls(U=torch.zeros((0, 0), dtype=dtype), S=torch.zeros(0, dtype=dtype))

    @property
    def is_empty(self) -> bool:
        return int(self.U.shape[0]) == 0

    @property
    def rank(self) -> int:
        return int(self.S.shape[0])


# -----------------------------------------------------------------------------
# Engine protocol
# -----------------------------------------------------------------------------

@runtime_checkable
class LowRankEngine(Protocol):
    """
    Interface the explorer depends on. Implementations are chosen once, at
    construction, from an SVDConfig (see make_svd_engine).
    """

    def factorize(self, A: Tensor, shrink_factors: Tensor, *, seed: int) -> LowRankFactors:
        """
        Args:
            A: sparse (num_actions, num_cols) matrix, possibly 0x0
            shrink_factors: (num_actions,) positive row scales
            seed: round seed for the implicit random matrices

        Returns:
            LowRankFactors, empty if A has no usable subspace
        """

    def close(self) -> None:
        """Release owned resources (worker threads). Safe to call twice."""


def _check_inputs(A: Tensor, shrink_factors: Tensor) -> None:
    if A.ndim != 2:
        raise ValueError(f"A must be a 2D matrix, got shape {tuple(A.shape)}")
    if shrink_factors.ndim != 1:
        raise ValueError(f"shrink_factors must be 1D, got shape {tuple(shrink_factors.shape)}")
    if A.shape[0] != 0 and int(shrink_factors.shape[0]) != int(A.shape[0]):
        raise ValueError(
            f"shrink_factors length {shrink_factors.shape[0]} must match A rows {A.shape[0]}"
        )


def _compact_columns(A: Tensor) -> tuple[Tensor, Tensor, Tensor, Tensor]:
    """
    Coalesced COO triplets of A with column ids renumbered to 0..n_used-1.

    Columns without a nonzero entry contribute nothing to A @ Omega or A^T @ X,
    so every product below works on the compacted matrix only.

    Returns:
        (rows, compact_cols, values, used_col_ids); rows are sorted ascending.
    """
    A = A.coalesce()
    idx = A.indices()
    rows = idx[0].contiguous()
    cols = idx[1].contiguous()
    used, compact = torch.unique(cols, sorted=True, return_inverse=True)
    return rows, compact, A.values(), used


def _core_svd(Q: Tensor, core: Tensor, d: int, dtype: torch.dtype) -> LowRankFactors:
    W, S, _ = torch.linalg.svd(core, full_matrices=False)
    k = min(int(S.shape[0]), int(d))
    U = Q @ W[:, :k]
    return LowRankFactors(U=U.to(dtype), S=S[:k].to(dtype))


# -----------------------------------------------------------------------------
# One-pass engine
# -----------------------------------------------------------------------------

def default_thread_pool_size() -> int:
    """Half of the hardware threads, keeping one back for the rest of the pipeline."""
    return max(0, ((os.cpu_count() or 1) - 1) // 2)


class OnePassSVD:
    """
    Single-sketch randomized range finder.

        Y = diag(shrink) A Omega          (num_actions x d)
        Q = gram_schmidt(Y)
        Q^T Y = W S V^T                   (tiny core SVD)
        U = Q W

    U spans exactly span(Q); W only rotates the basis so that its columns come
    out ordered by the singular value estimates in S.

    Omega is implicit: its row for feature column c is projection_matrix(seed, [c], d).
    Rows of Y are computed in blocks of `block_size` rows (default:
    ceil(num_actions / thread_pool_size)). Each block writes only its own rows,
    so the result does not depend on the pool size, block size or scheduling.
    """

    def __init__(
        self,
        d: int,
        *,
        thread_pool_size: Optional[int] = None,
        block_size: int = 0,
        use_explicit_simd: bool = False,
        dtype: torch.dtype = torch.float32,
    ) -> None:
        if int(d) <= 0:
            raise ValueError(f"d must be positive, got {d}")
        pool = default_thread_pool_size() if thread_pool_size is None else int(thread_pool_size)
        if pool < 0:
            raise ValueError(f"thread_pool_size must be >= 0, got {thread_pool_size}")
        if int(block_size) < 0:
            raise ValueError(f"block_size must be >= 0, got {block_size}")

        self.d = int(d)
        self.thread_pool_size = pool
        self.block_size = int(block_size)
        self.use_explicit_simd = bool(use_explicit_simd)
        self.dtype = dtype

        # With 0 or 1 workers blocks run inline on the calling thread.
        self._pool: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=pool, thread_name_prefix="spanex-svd") if pool > 1 else None
        )

    def __enter__(self) -> "OnePassSVD":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def _blocks(self, num_rows: int) -> list[tuple[int, int]]:
        workers = max(1, self.thread_pool_size)
        size = self.block_size if self.block_size > 0 else -(-num_rows // workers)
        size = max(1, size)
        return [(start, min(start + size, num_rows)) for start in range(0, num_rows, size)]

    def _project_block(
        self,
        block: tuple[int, int],
        rows: Tensor,
        cols: Tensor,
        vals: Tensor,
        omega: Tensor,
    ) -> Tensor:
        start, end = block
        bounds = torch.searchsorted(rows, torch.tensor([start, end], dtype=rows.dtype))
        lo, hi = int(bounds[0].item()), int(bounds[1].item())
        r = rows[lo:hi] - start
        c = cols[lo:hi]
        v = vals[lo:hi]

        if self.use_explicit_simd:
            # Densify the block and hand the product to BLAS.
            dense = torch.zeros((end - start, int(omega.shape[0])), dtype=omega.dtype)
            dense.index_put_((r, c), v, accumulate=True)
            return dense @ omega

        out = torch.zeros((end - start, int(omega.shape[1])), dtype=omega.dtype)
        out.index_add_(0, r, v.unsqueeze(1) * omega.index_select(0, c))
        return out

    def sketch(self, A: Tensor, shrink_factors: Tensor, *, seed: int) -> Tensor:
        """Y = diag(shrink) A Omega in float64, shape (num_actions, d)."""
        num_rows = int(A.shape[0])
        rows, cols, vals, used = _compact_columns(A)
        vals = vals.to(torch.float64)
        omega = projection_matrix(seed, used, self.d, dtype=torch.float64)

        blocks = self._blocks(num_rows)
        if self._pool is None or len(blocks) == 1:
            parts = [self._project_block(b, rows, cols, vals, omega) for b in blocks]
        else:
            parts = list(self._pool.map(lambda b: self._project_block(b, rows, cols, vals, omega), blocks))

        Y = torch.cat(parts, dim=0)
        return Y * shrink_factors.to(torch.float64).unsqueeze(1)

    def factorize(self, A: Tensor, shrink_factors: Tensor, *, seed: int) -> LowRankFactors:
        _check_inputs(A, shrink_factors)
        if A.shape[0] == 0 or A.shape[1] == 0:
            return LowRankFactors.empty(self.dtype)

        Y = self.sketch(A, shrink_factors, seed=seed)
        Q = gram_schmidt(Y)
        if Q.shape[1] == 0:
            logger.debug("one-pass sketch collapsed to an empty basis")
            return LowRankFactors.empty(self.dtype)

        return _core_svd(Q, Q.T @ Y, self.d, self.dtype)


# -----------------------------------------------------------------------------
# Two-pass engine
# -----------------------------------------------------------------------------

class TwoPassSVD:
    """
    Two-pass randomized SVD:

        Y   = A_s^T Omega              Omega: (num_actions x d), implicit
        Q_y = gram_schmidt(Y)          [+ power iterations Q_y <- gs(A_s^T A_s Q_y)]
        B   = A_s Q_y                  second pass over A
        Z   = B P                      P: (k x d), implicit, separate stream
        Q_z = gram_schmidt(Z)
        C   = Q_z^T B = W S V^T
        U   = Q_z W

    with A_s = diag(shrink) A. Runs on the calling thread.
    """

    def __init__(
        self,
        d: int,
        *,
        power_iterations: int = 0,
        dtype: torch.dtype = torch.float32,
    ) -> None:
        if int(d) <= 0:
            raise ValueError(f"d must be positive, got {d}")
        if int(power_iterations) < 0:
            raise ValueError(f"power_iterations must be >= 0, got {power_iterations}")
        self.d = int(d)
        self.power_iterations = int(power_iterations)
        self.dtype = dtype

    def close(self) -> None:
        return None

    def factorize(self, A: Tensor, shrink_factors: Tensor, *, seed: int) -> LowRankFactors:
        _check_inputs(A, shrink_factors)
        if A.shape[0] == 0 or A.shape[1] == 0:
            return LowRankFactors.empty(self.dtype)

        num_rows = int(A.shape[0])
        rows, cols, vals, used = _compact_columns(A)
        scaled = vals.to(torch.float64) * shrink_factors.to(torch.float64).index_select(0, rows)
        A_s = torch.sparse_coo_tensor(
            torch.stack([rows, cols], dim=0), scaled, (num_rows, int(used.shape[0]))
        ).coalesce()
        A_t = A_s.t().coalesce()

        omega = projection_matrix(seed, torch.arange(num_rows), self.d, dtype=torch.float64)
        Q_y = gram_schmidt(torch.sparse.mm(A_t, omega))
        for _ in range(self.power_iterations):
            if Q_y.shape[1] == 0:
                break
            Q_y = gram_schmidt(torch.sparse.mm(A_t, torch.sparse.mm(A_s, Q_y)))
        if Q_y.shape[1] == 0:
            logger.debug("two-pass range finder collapsed to an empty basis")
            return LowRankFactors.empty(self.dtype)

        B = torch.sparse.mm(A_s, Q_y)
        P = projection_matrix(
            derive_seed(seed, _MIXING_STREAM), torch.arange(int(Q_y.shape[1])), self.d, dtype=torch.float64
        )
        Q_z = gram_schmidt(B @ P)
        if Q_z.shape[1] == 0:
            logger.debug("two-pass mixing step collapsed to an empty basis")
            return LowRankFactors.empty(self.dtype)

        return _core_svd(Q_z, Q_z.T @ B, self.d, self.dtype)


# -----------------------------------------------------------------------------
# Config schema + factory
# -----------------------------------------------------------------------------

SVDKind = Literal["one_pass", "two_pass"]


@dataclass(frozen=True)
class OnePassSVDConfig:
    """
    One-pass engine config (the default).

    thread_pool_size:
      Worker threads owned by the engine. None = default_thread_pool_size();
      0 or 1 = compute on the calling thread.

    block_size:
      Actions per scheduled block; 0 = num_actions / thread_pool_size.

    use_explicit_simd:
      Use the dense BLAS block kernel. Only supported when interactions are at
      most quadratic; the explorer turns it off (with a warning) otherwise.
    """
    kind: Literal["one_pass"] = "one_pass"
    thread_pool_size: Optional[int] = None
    block_size: int = 0
    use_explicit_simd: bool = False


@dataclass(frozen=True)
class TwoPassSVDConfig:
    """Two-pass engine config: more accurate, much slower, single-threaded."""
    kind: Literal["two_pass"] = "two_pass"
    power_iterations: int = 0


SVDConfig = Union[OnePassSVDConfig, TwoPassSVDConfig]


def _is_one_pass_cfg(cfg: SVDConfig) -> TypeGuard[OnePassSVDConfig]:
    return isinstance(cfg, OnePassSVDConfig) or getattr(cfg, "kind", None) == "one_pass"


def _is_two_pass_cfg(cfg: SVDConfig) -> TypeGuard[TwoPassSVDConfig]:
    return isinstance(cfg, TwoPassSVDConfig) or getattr(cfg, "kind", None) == "two_pass"


def parse_svd_config(obj: Mapping[str, Any]) -> SVDConfig:
    """
    Build an SVDConfig from a dict-like payload.

    Examples:
      parse_svd_config({"kind": "one_pass", "thread_pool_size": 4, "block_size": 256})
      parse_svd_config({"kind": "two_pass", "power_iterations": 1})
    """
    kind = obj.get("kind", "one_pass")
    if kind == "one_pass":
        pool = obj.get("thread_pool_size")
        return OnePassSVDConfig(
            thread_pool_size=None if pool is None else int(pool),
            block_size=int(obj.get("block_size", 0)),
            use_explicit_simd=bool(obj.get("use_explicit_simd", False)),
        )
    if kind == "two_pass":
        return TwoPassSVDConfig(power_iterations=int(obj.get("power_iterations", 0)))
    raise ValueError(f"Unknown svd kind: {kind!r}")


def make_svd_engine(cfg: SVDConfig, *, d: int, dtype: torch.dtype = torch.float32) -> LowRankEngine:
    """Build the low-rank engine selected by cfg.kind."""
    if _is_one_pass_cfg(cfg):
        return OnePassSVD(
            d,
            thread_pool_size=cfg.thread_pool_size,
            block_size=cfg.block_size,
            use_explicit_simd=cfg.use_explicit_simd,
            dtype=dtype,
        )
    if _is_two_pass_cfg(cfg):
        return TwoPassSVD(d, power_iterations=cfg.power_iterations, dtype=dtype)

    raise TypeError(f"Unsupported svd config type: {type(cfg)}")


__all__ = [
    "LowRankFactors",
    "LowRankEngine",
    "OnePassSVD",
    "TwoPassSVD",
    "default_thread_pool_size",
    "SVDKind",
    "OnePassSVDConfig",
    "TwoPassSVDConfig",
    "SVDConfig",
    "parse_svd_config",
    "make_svd_engine",
]
