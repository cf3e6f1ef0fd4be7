import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spls

import pyfbpd.abc as pfa
import pyfbpd.info.ptype as pft
import pyfbpd.util as pfu

__all__ = [
    "IdentityOp",
    "HomothetyOp",
    "ExplicitLinOp",
    "FiniteDifference",
]


class IdentityOp(pfa.LinOp):
    """
    Identity operator.

    If `dim` is omitted the operator accepts inputs of any size.
    """

    def __init__(self, dim: pft.Integer = None):
        super().__init__(shape=(dim, dim))
        self.lipschitz = 1

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        return arr

    def adjoint(self, arr: pft.NDArray) -> pft.NDArray:
        return arr


class HomothetyOp(pfa.LinOp):
    r"""
    Scaling operator :math:`\mathbf{x} \mapsto c\,\mathbf{x}`.
    """

    def __init__(self, cst: pft.Real, dim: pft.Integer = None):
        try:
            self._cst = float(cst)
        except Exception:
            raise ValueError(f"cst: expected real number, got {cst}.")
        super().__init__(shape=(dim, dim))
        self.lipschitz = abs(self._cst)

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        out = arr.copy()
        out *= self._cst
        return out

    def adjoint(self, arr: pft.NDArray) -> pft.NDArray:
        return self.apply(arr)


class ExplicitLinOp(pfa.LinOp):
    r"""
    Linear operator defined by an explicit (M, N) matrix.

    Dense matrices act on NumPy/Dask/CuPy inputs of matching backend.  SciPy sparse matrices act on NumPy inputs only.

    The operator norm is computed at construction time unless provided:

    * dense: exact spectral norm via :py:func:`numpy.linalg.norm`;
    * sparse: largest singular value via :py:func:`scipy.sparse.linalg.svds`.
    """

    def __init__(self, mat, lipschitz: pft.Real = None):
        """
        Parameters
        ----------
        mat: NDArray, :py:class:`scipy.sparse.spmatrix`
            (M, N) matrix.
        lipschitz: Real
            Known upper bound on the spectral norm of `mat`.  Skips the norm computation if provided.
        """
        if mat.ndim != 2:
            raise ValueError(f"mat: expected 2D matrix, got {mat.ndim}D.")
        super().__init__(shape=mat.shape)
        self._sparse = sp.issparse(mat)
        self._mat = mat.tocsr() if self._sparse else mat

        if lipschitz is None:
            lipschitz = self._spectral_norm()
        self.lipschitz = lipschitz

    def _spectral_norm(self) -> float:
        A = self._mat
        if self._sparse:
            if min(A.shape) == 1:  # rank-1: spectral == Frobenius
                return float(spls.norm(A))
            else:
                s = spls.svds(A.astype(np.double), k=1, return_singular_vectors=False)
                return float(s.max())
        else:
            return float(np.linalg.norm(pfu.to_NUMPY(A), ord=2))

    def _matmul(self, A, arr: pft.NDArray) -> pft.NDArray:
        # (..., N) -> (..., M) with A: (M, N)
        if self._sparse:
            sh = arr.shape[:-1]
            out = A.dot(arr.reshape(-1, arr.shape[-1]).T).T
            return out.reshape(*sh, A.shape[0])
        else:
            return arr @ A.T

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        return self._matmul(self._mat, arr)

    def adjoint(self, arr: pft.NDArray) -> pft.NDArray:
        return self._matmul(self._mat.T, arr)

    def asarray(self) -> np.ndarray:
        """
        Dense (M, N) NumPy representation of the operator.
        """
        A = self._mat.toarray() if self._sparse else pfu.to_NUMPY(self._mat)
        return np.asarray(A)


class FiniteDifference(pfa.LinOp):
    r"""
    1st-order forward finite differences :math:`(\mathbf{D}\mathbf{x})_{i} = x_{i+1} - x_{i}`, :math:`0\le i<N-1`.

    :math:`\Vert\mathbf{D}\Vert_{2} < 2`, hence :math:`\nu = 4` is a valid operator-norm bound for
    :py:class:`~pyfbpd.opt.solver.FBPD`.
    """

    def __init__(self, dim: pft.Integer):
        try:
            assert int(dim) >= 2
        except Exception:
            raise ValueError(f"dim: expected integer >= 2, got {dim}.")
        super().__init__(shape=(int(dim) - 1, int(dim)))
        self.lipschitz = 2

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        return arr[..., 1:] - arr[..., :-1]

    def adjoint(self, arr: pft.NDArray) -> pft.NDArray:
        xp = pfu.get_array_module(arr)
        out = xp.concatenate(
            [
                -arr[..., :1],
                arr[..., :-1] - arr[..., 1:],
                arr[..., -1:],
            ],
            axis=-1,
        )
        return out
