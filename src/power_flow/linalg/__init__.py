"""Sparse linear solver handles (LU / QR / LDLt) with pattern-token bookkeeping."""

from .factorization import (
    Factorization,
    FactorizationError,
    LDLtSolver,
    LinearSolver,
    LUSolver,
    QRSolver,
    make_solver,
)

__all__ = [
    "Factorization",
    "FactorizationError",
    "LDLtSolver",
    "LUSolver",
    "LinearSolver",
    "QRSolver",
    "make_solver",
]
