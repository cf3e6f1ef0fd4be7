import numpy as np

import pyfbpd.abc as pfa
import pyfbpd.info.ptype as pft
import pyfbpd.util as pfu

__all__ = [
    "NullFunc",
    "SquaredL2Loss",
    "L1Norm",
    "L2Norm",
    "PositiveOrthant",
    "Box",
]


def _bool2indicator(in_set: pft.NDArray, dtype: pft.DType) -> pft.NDArray:
    # (..., 1) membership mask -> (..., 1) {0, inf} values
    xp = pfu.get_array_module(in_set)
    out = xp.where(in_set, 0, np.inf).astype(dtype)
    return out


class NullFunc(pfa.SmoothTerm, pfa.NonSmoothTerm):
    r"""
    Null functional :math:`f(\mathbf{x}) = 0`.

    Usable on both sides of an FBPD problem: as the smooth term it has :math:`\beta = 0` and a zero gradient, as a
    non-smooth term its proximity operator is the identity.
    """

    def __init__(self, dim: pft.Integer = None):
        pfa.SmoothTerm.__init__(self, dim=dim)
        pfa.NonSmoothTerm.__init__(self, dim=dim)
        self.diff_lipschitz = 0

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        xp = pfu.get_array_module(arr)
        return xp.zeros((*arr.shape[:-1], 1), dtype=arr.dtype)

    def grad(self, arr: pft.NDArray) -> pft.NDArray:
        xp = pfu.get_array_module(arr)
        return xp.zeros_like(arr)

    def prox(self, arr: pft.NDArray, tau: pft.Real) -> pft.NDArray:
        return arr

    def fenchel_prox(self, arr: pft.NDArray, sigma: pft.Real) -> pft.NDArray:
        # conjugate = indicator of {0}
        xp = pfu.get_array_module(arr)
        return xp.zeros_like(arr)

    def __repr__(self) -> str:
        return pfa.NonSmoothTerm.__repr__(self)


class SquaredL2Loss(pfa.SmoothTerm):
    r"""
    Least-squares data-fidelity term

    .. math::

       f(\mathbf{x}) = \frac{1}{2} \Vert \mathbf{A}\mathbf{x} - \mathbf{y} \Vert_{2}^{2},

    with gradient :math:`\mathbf{A}^{T}(\mathbf{A}\mathbf{x} - \mathbf{y})` and :math:`\beta = \Vert\mathbf{A}\Vert_{2}^{2}`.
    """

    def __init__(self, data: pft.NDArray = None, op: pfa.LinOp = None):
        r"""
        Parameters
        ----------
        data: NDArray
            (M,) observations :math:`\mathbf{y}`.  (Default: 0.)
        op: LinOp
            (M, N) forward operator :math:`\mathbf{A}`.  (Default: identity.)
        """
        if op is None:
            from pyfbpd.operator.linop import IdentityOp

            dim = None if (data is None) else data.shape[-1]
            op = IdentityOp(dim=dim)
        elif not isinstance(op, pfa.LinOp):
            raise ValueError(f"op: expected LinOp, got {type(op)}.")
        if (data is not None) and (op.codim is not None) and (data.shape[-1] != op.codim):
            raise ValueError(f"data: expected ({op.codim},) observations, got {data.shape}.")

        super().__init__(dim=op.dim)
        self._op = op
        self._data = data
        self.diff_lipschitz = op.lipschitz**2

    def _residual(self, arr: pft.NDArray) -> pft.NDArray:
        r = self._op.apply(arr)
        if self._data is not None:
            r = r - self._data
        return r

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        r = self._residual(arr)
        return 0.5 * (r**2).sum(axis=-1, keepdims=True)

    def grad(self, arr: pft.NDArray) -> pft.NDArray:
        return self._op.adjoint(self._residual(arr))


class L1Norm(pfa.NonSmoothTerm):
    r"""
    :math:`\ell_{1}`-norm, :math:`\Vert\mathbf{x}\Vert_{1} := \sum_{i} |x_{i}|`.

    The proximity operator is soft-thresholding.
    """

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        xp = pfu.get_array_module(arr)
        return xp.fabs(arr).sum(axis=-1, keepdims=True)

    def prox(self, arr: pft.NDArray, tau: pft.Real) -> pft.NDArray:
        xp = pfu.get_array_module(arr)
        y = xp.fmax(0, xp.fabs(arr) - tau)
        y *= xp.sign(arr)
        return y

    def fenchel_prox(self, arr: pft.NDArray, sigma: pft.Real) -> pft.NDArray:
        # conjugate = indicator of the unit L-inf ball
        return arr.clip(-1, 1)


class L2Norm(pfa.NonSmoothTerm):
    r"""
    :math:`\ell_{2}`-norm, :math:`\Vert\mathbf{x}\Vert_{2} := \sqrt{\sum_{i} |x_{i}|^{2}}`.
    """

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        xp = pfu.get_array_module(arr)
        return xp.sqrt((arr**2).sum(axis=-1, keepdims=True))

    def prox(self, arr: pft.NDArray, tau: pft.Real) -> pft.NDArray:
        xp = pfu.get_array_module(arr)
        scale = 1 - tau / xp.fmax(self.apply(arr), tau)  # (..., 1)

        y = arr.copy()
        y *= scale
        return y


class PositiveOrthant(pfa.NonSmoothTerm):
    r"""
    Indicator function of the positive orthant.

    .. math::

       \iota_{+}(\mathbf{x})
       :=
       \begin{cases}
           0 & \min{\mathbf{x}} \ge 0,\\
           \infty & \text{otherwise}.
       \end{cases}

    .. math::

       \text{prox}_{\tau\, \iota_{+}}(\mathbf{x})
       :=
       \max(\mathbf{x}, \mathbf{0})
    """

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        in_set = (arr >= 0).all(axis=-1, keepdims=True)
        return _bool2indicator(in_set, arr.dtype)

    def prox(self, arr: pft.NDArray, tau: pft.Real) -> pft.NDArray:
        return arr.clip(0, None)


class Box(pfa.NonSmoothTerm):
    r"""
    Indicator function of the box :math:`\{\mathbf{x} : l \le x_{i} \le u\}`.

    Bounds may be infinite.  The proximity operator clips inputs to the box.
    """

    def __init__(self, lower: pft.Real = -np.inf, upper: pft.Real = np.inf, dim: pft.Integer = None):
        try:
            assert np.all(np.asarray(lower) <= np.asarray(upper))
        except Exception:
            raise ValueError(f"Box bounds must satisfy lower <= upper, got ({lower}, {upper}).")
        super().__init__(dim=dim)
        self._lower = lower
        self._upper = upper

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        in_set = ((arr >= self._lower) & (arr <= self._upper)).all(axis=-1, keepdims=True)
        return _bool2indicator(in_set, arr.dtype)

    def prox(self, arr: pft.NDArray, tau: pft.Real) -> pft.NDArray:
        xp = pfu.get_array_module(arr)
        return xp.clip(arr, self._lower, self._upper)
