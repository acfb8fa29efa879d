from __future__ import annotations

"""
Factorization handles used by the power flow methods.

Each method instance owns its handles exclusively. A handle has two phases:

- `factorize(A)`: symbolic + numeric. For the sparse kinds the symbolic phase is
  a fill-reducing ordering (reverse Cuthill-McKee on the symmetrised structure),
  computed once per sparsity pattern.
- `refactorize(A)`: numeric only. Reuses the stored ordering; `A` must have the
  same nonzero structure as the matrix given to the last `factorize`. The owner
  guarantees this by comparing pattern tokens, the handle does not re-check it.

Kinds
-----
- LU: SuperLU with partial pivoting on the pre-ordered matrix (default).
- LDLT: SuperLU in symmetric mode with diagonal pivoting; symmetric matrices only.
- QR: column-pivoted Householder QR (dense, LAPACK); handles rectangular and
  rank-revealing cases at the cost of density.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional, Union

import numpy as np
import scipy.linalg as la
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from scipy.sparse.csgraph import reverse_cuthill_mckee

logger = logging.getLogger(__name__)

_SYMMETRY_RTOL = 1e-12
_QR_RANK_RTOL = 1e-13


class FactorizationError(RuntimeError):
    """Raised when a factorization fails (singular matrix) or a solve yields non-finite values."""


class Factorization(str, Enum):
    """Factorization kind selected once at method construction."""

    LU = "lu"
    QR = "qr"
    LDLT = "ldlt"

    @classmethod
    def parse(cls, value: Union["Factorization", str]) -> "Factorization":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown factorization {value!r}; expected one of: {allowed}") from None


class LinearSolver(ABC):
    """
    Uniform factorize / refactorize / solve interface.

    Attributes
    ----------
    pattern:
        Opaque token recorded by the owner at the last full factorization
        (None until then). Used by the owner to decide whether `refactorize` is valid.
    """

    kind: Factorization

    def __init__(self) -> None:
        self.pattern: Optional[int] = None
        self._shape: Optional[tuple[int, int]] = None

    @property
    def factorized(self) -> bool:
        return self._shape is not None

    def factorize(self, matrix: Any, *, pattern: Optional[int] = None) -> None:
        """Symbolic + numeric factorization; records `pattern` as the owner's token."""
        A = sp.csc_matrix(matrix)
        self._check_shape(A)
        self.pattern = None
        if A.shape[1] > 0:
            self._symbolic(A)
            self._numeric(A)
        self._shape = (int(A.shape[0]), int(A.shape[1]))
        self.pattern = pattern
        logger.debug(
            "%s factorize: shape=%s, nnz=%d, pattern=%s",
            self.kind.name,
            self._shape,
            A.nnz,
            pattern,
        )

    def refactorize(self, matrix: Any) -> None:
        """
        Numeric-only factorization reusing the stored symbolic phase.

        Raises
        ------
        ValueError
            If called before `factorize` or with a matrix of a different shape.
        """
        if self._shape is None:
            raise ValueError("refactorize() called before factorize()")
        A = sp.csc_matrix(matrix)
        if A.shape != self._shape:
            raise ValueError(f"refactorize() shape mismatch: {A.shape} vs {self._shape}")
        if A.shape[1] > 0:
            self._numeric(A)

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        """
        Solve `A x = rhs` with the current factorization.

        Raises
        ------
        FactorizationError
            If the solution contains non-finite values.
        """
        if self._shape is None:
            raise ValueError("solve() called before factorize()")
        b = np.asarray(rhs)
        if b.shape[0] != self._shape[0]:
            raise ValueError(f"rhs has length {b.shape[0]}, expected {self._shape[0]}")
        if self._shape[1] == 0:
            return np.zeros((0,) + b.shape[1:], dtype=b.dtype)
        x = self._solve(b)
        if not np.all(np.isfinite(x)):
            raise FactorizationError(f"{self.kind.name} solve produced non-finite values.")
        return x

    def _check_shape(self, A: sp.csc_matrix) -> None:
        if A.shape[0] != A.shape[1]:
            raise ValueError(f"{self.kind.name} requires a square matrix; got {A.shape}")

    @abstractmethod
    def _symbolic(self, A: sp.csc_matrix) -> None: ...

    @abstractmethod
    def _numeric(self, A: sp.csc_matrix) -> None: ...

    @abstractmethod
    def _solve(self, rhs: np.ndarray) -> np.ndarray: ...


class _OrderedSuperLU(LinearSolver):
    """SuperLU on a matrix permuted symmetrically by a stored fill-reducing ordering."""

    _splu_options: dict[str, Any] = {}

    def __init__(self) -> None:
        super().__init__()
        self._perm: Optional[np.ndarray] = None
        self._lu: Any = None

    def _symbolic(self, A: sp.csc_matrix) -> None:
        structure = abs(A) + abs(A).T
        structure = sp.csr_matrix(structure)
        self._perm = np.asarray(
            reverse_cuthill_mckee(structure, symmetric_mode=True), dtype=int
        )

    def _numeric(self, A: sp.csc_matrix) -> None:
        perm = self._perm
        permuted = A[perm, :][:, perm].tocsc()
        try:
            self._lu = spla.splu(permuted, permc_spec="NATURAL", **self._splu_options)
        except RuntimeError as e:
            self._lu = None
            raise FactorizationError(
                f"{self.kind.name} factorization failed (singular matrix?): n={A.shape[0]}, nnz={A.nnz}"
            ) from e

    def _solve(self, rhs: np.ndarray) -> np.ndarray:
        if self._lu is None:
            raise FactorizationError(f"{self.kind.name} handle holds no valid factorization.")
        perm = self._perm
        y = self._lu.solve(np.ascontiguousarray(rhs[perm]))
        x = np.empty_like(y)
        x[perm] = y
        return x


class LUSolver(_OrderedSuperLU):
    kind = Factorization.LU


class LDLtSolver(_OrderedSuperLU):
    """
    Symmetric factorization A = L D L^T.

    SuperLU runs with `SymmetricMode` and diagonal pivoting only, so pivots stay on
    the diagonal of the symmetrically permuted matrix.
    """

    kind = Factorization.LDLT
    _splu_options = {"diag_pivot_thresh": 0.0, "options": {"SymmetricMode": True}}

    def _check_shape(self, A: sp.csc_matrix) -> None:
        super()._check_shape(A)
        asym = abs(A - A.T)
        scale = max(1.0, float(abs(A).max()) if A.nnz else 0.0)
        if asym.nnz and float(asym.max()) > _SYMMETRY_RTOL * scale:
            raise ValueError("LDLt factorization requires a symmetric matrix.")


class QRSolver(LinearSolver):
    """Column-pivoted QR, A P = Q R; least-squares solution for tall systems."""

    kind = Factorization.QR

    def __init__(self) -> None:
        super().__init__()
        self._q: Optional[np.ndarray] = None
        self._r: Optional[np.ndarray] = None
        self._p: Optional[np.ndarray] = None

    def _check_shape(self, A: sp.csc_matrix) -> None:
        if A.shape[0] < A.shape[1]:
            raise ValueError(f"QR requires rows >= columns; got {A.shape}")

    def _symbolic(self, A: sp.csc_matrix) -> None:
        # Dense factorization has no separate symbolic phase.
        return None

    def _numeric(self, A: sp.csc_matrix) -> None:
        q, r, p = la.qr(A.toarray(), mode="economic", pivoting=True)
        diag = np.abs(np.diag(r))
        if diag.size and (diag[0] == 0.0 or diag[-1] <= _QR_RANK_RTOL * diag[0]):
            self._q = self._r = self._p = None
            rank = int(np.sum(diag > _QR_RANK_RTOL * (diag[0] if diag.size else 0.0)))
            raise FactorizationError(
                f"QR factorization is rank deficient: rank={rank}, columns={A.shape[1]}"
            )
        self._q, self._r, self._p = q, r, p

    def _solve(self, rhs: np.ndarray) -> np.ndarray:
        if self._q is None:
            raise FactorizationError("QR handle holds no valid factorization.")
        y = la.solve_triangular(self._r, self._q.conj().T @ rhs)
        x = np.empty_like(y)
        x[self._p] = y
        return x


def make_solver(kind: Union[Factorization, str] = Factorization.LU) -> LinearSolver:
    """Return a fresh, unfactorized handle for `kind`."""
    k = Factorization.parse(kind)
    if k is Factorization.LU:
        return LUSolver()
    if k is Factorization.QR:
        return QRSolver()
    return LDLtSolver()
