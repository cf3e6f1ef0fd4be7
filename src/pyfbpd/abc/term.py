import copy
import math

import pyfbpd.info.exception as pfe
import pyfbpd.info.ptype as pft
import pyfbpd.util as pfu

__all__ = [
    "LinOp",
    "SmoothTerm",
    "NonSmoothTerm",
]


class LinOp:
    r"""
    Base class for bounded linear operators :math:`\mathbf{K}:\mathbb{R}^{N}\to\mathbb{R}^{M}`.

    Instances of this class must implement :py:meth:`~pyfbpd.abc.LinOp.apply` and
    :py:meth:`~pyfbpd.abc.LinOp.adjoint`.

    Operators act on the trailing axis of their inputs: (..., N) -> (..., M).  Either dimension may be ``None`` if the
    operator is dimension-agnostic (e.g. the identity).

    If the operator norm :math:`\Vert\mathbf{K}\Vert_{2}` (or an upper bound thereof) is known, it should be stored in
    the :py:attr:`~pyfbpd.abc.LinOp.lipschitz` attribute (initialized to :math:`+\infty` by default).
    """

    def __init__(self, shape: tuple[pft.Integer, pft.Integer]):
        """
        Parameters
        ----------
        shape: tuple(Integer, Integer)
            (M, N) operator shape, i.e. (codim, dim).  Entries may be ``None``.
        """
        try:
            codim, dim = shape
            self._shape = tuple(None if (s is None) else int(s) for s in (codim, dim))
        except Exception:
            raise ValueError(f"shape: expected (codim, dim) pair, got {shape}.")
        self._lipschitz = math.inf

    @property
    def shape(self) -> tuple[pft.Integer, pft.Integer]:
        return self._shape

    @property
    def codim(self) -> pft.Integer:
        return self._shape[0]

    @property
    def dim(self) -> pft.Integer:
        return self._shape[1]

    @property
    def lipschitz(self) -> pft.Real:
        r"""
        Upper bound on the operator norm :math:`\Vert\mathbf{K}\Vert_{2}`.
        """
        return self._lipschitz

    @lipschitz.setter
    def lipschitz(self, L: pft.Real):
        try:
            assert L >= 0
            self._lipschitz = float(L)
        except Exception:
            raise ValueError(f"lipschitz: expected non-negative value, got {L}.")

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        """
        Evaluate operator at specified point(s).

        Parameters
        ----------
        arr: NDArray
            (..., N) input points.

        Returns
        -------
        out: NDArray
            (..., M) output points.  Callers must not modify `out` in-place: it may share memory with `arr`.
        """
        raise NotImplementedError

    def adjoint(self, arr: pft.NDArray) -> pft.NDArray:
        """
        Evaluate operator adjoint at specified point(s).

        Parameters
        ----------
        arr: NDArray
            (..., M) input points.

        Returns
        -------
        out: NDArray
            (..., N) output points.  Callers must not modify `out` in-place: it may share memory with `arr`.
        """
        raise NotImplementedError

    def __call__(self, arr: pft.NDArray) -> pft.NDArray:
        return self.apply(arr)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}{self.shape}"


class SmoothTerm:
    r"""
    Base class for convex differentiable functionals :math:`\mathcal{F}:\mathbb{R}^{N}\to\mathbb{R}`.

    Instances of this class must implement :py:meth:`~pyfbpd.abc.SmoothTerm.apply` and
    :py:meth:`~pyfbpd.abc.SmoothTerm.grad`.

    The Lipschitz constant :math:`\beta` of :math:`\nabla\mathcal{F}` should be stored in the
    :py:attr:`~pyfbpd.abc.SmoothTerm.diff_lipschitz` attribute (initialized to :math:`+\infty` by default).
    :math:`\beta=0` means the functional is affine (typically: absent).
    """

    def __init__(self, dim: pft.Integer = None):
        self._dim = None if (dim is None) else int(dim)
        self._diff_lipschitz = math.inf

    @property
    def dim(self) -> pft.Integer:
        return self._dim

    @property
    def diff_lipschitz(self) -> pft.Real:
        return self._diff_lipschitz

    @diff_lipschitz.setter
    def diff_lipschitz(self, beta: pft.Real):
        try:
            assert beta >= 0
            self._diff_lipschitz = float(beta)
        except Exception:
            raise ValueError(f"diff_lipschitz: expected non-negative value, got {beta}.")

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        """
        Evaluate functional at specified point(s).

        Parameters
        ----------
        arr: NDArray
            (..., N) input points.

        Returns
        -------
        out: NDArray
            (..., 1) output values.
        """
        raise NotImplementedError

    def grad(self, arr: pft.NDArray) -> pft.NDArray:
        """
        Evaluate functional gradient at specified point(s).

        Parameters
        ----------
        arr: NDArray
            (..., N) input points.

        Returns
        -------
        out: NDArray
            (..., N) gradients.
        """
        raise NotImplementedError

    def __call__(self, arr: pft.NDArray) -> pft.NDArray:
        return self.apply(arr)


class NonSmoothTerm:
    r"""
    Base class for proper, lower semicontinuous, convex proximable functionals
    :math:`\mathcal{H}:\mathbb{R}^{M}\to\mathbb{R}\cup\{+\infty\}`, optionally composed with a linear operator
    :math:`\mathbf{K}`.

    Instances of this class must implement :py:meth:`~pyfbpd.abc.NonSmoothTerm.apply` and
    :py:meth:`~pyfbpd.abc.NonSmoothTerm.prox`.  Sub-classes may overwrite
    :py:meth:`~pyfbpd.abc.NonSmoothTerm.fenchel_prox` when a cheaper closed form exists.

    The linear operator is attached once, at construction time, via :py:meth:`~pyfbpd.abc.NonSmoothTerm.compose` or
    the ``term * K`` shorthand.  It is *not* part of :py:meth:`~pyfbpd.abc.NonSmoothTerm.prox`: solvers are
    responsible for applying :math:`\mathbf{K}` and its adjoint.

    Examples
    --------
    .. code-block:: python3

       from pyfbpd.operator import FiniteDifference, L1Norm

       N = 100
       h = 0.1 * L1Norm(N - 1) * FiniteDifference(N)  # H(Kx) = 0.1 * |Dx|_1
       h.K  # -> FiniteDifference(99, 100)
    """

    def __init__(self, dim: pft.Integer = None):
        self._dim = None if (dim is None) else int(dim)
        self._K = None

    @property
    def dim(self) -> pft.Integer:
        return self._dim

    @property
    def K(self) -> LinOp:
        """
        Linear operator composed with the functional, or ``None``.
        """
        return self._K

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        """
        Evaluate functional (without its linear operator) at specified point(s).

        Parameters
        ----------
        arr: NDArray
            (..., M) input points.

        Returns
        -------
        out: NDArray
            (..., 1) output values.
        """
        raise NotImplementedError

    def prox(self, arr: pft.NDArray, tau: pft.Real) -> pft.NDArray:
        r"""
        Evaluate proximity operator of the ``tau``-scaled functional at specified point(s).

        Parameters
        ----------
        arr: NDArray
            (..., M) input points.
        tau: Real
            Positive scale factor.

        Returns
        -------
        out: NDArray
            (..., M) proximal evaluations.

        Notes
        -----
        For :math:`\tau>0`, the *proximity operator* of a ``tau``-scaled functional :math:`h` is defined as:

        .. math::

           \mathbf{\text{prox}}_{\tau h}(\mathbf{z})
           :=
           \arg\min_{\mathbf{x}\in\mathbb{R}^M} h(x)+\frac{1}{2\tau} \|\mathbf{x}-\mathbf{z}\|_2^2.
        """
        raise NotImplementedError

    def fenchel_prox(self, arr: pft.NDArray, sigma: pft.Real) -> pft.NDArray:
        r"""
        Evaluate proximity operator of the ``sigma``-scaled Fenchel conjugate of a functional at specified point(s).

        Parameters
        ----------
        arr: NDArray
            (..., M) input points.
        sigma: Real
            Positive scale factor.

        Returns
        -------
        out: NDArray
            (..., M) proximal evaluations.

        Notes
        -----
        From **Moreau's identity**:

        .. math::

           \mathbf{\text{prox}}_{\sigma h^\ast}(\mathbf{z})
           =
           \mathbf{z} - \sigma \mathbf{\text{prox}}_{h/\sigma}(\mathbf{z}/\sigma).
        """
        out = pfu.copy_if_unsafe(self.prox(arr / sigma, tau=1 / sigma))
        out *= -sigma
        out += arr
        return out

    def compose(self, K: LinOp) -> "NonSmoothTerm":
        """
        Attach a linear operator to the functional.

        Parameters
        ----------
        K: LinOp
            (M, N) linear operator.

        Returns
        -------
        op: NonSmoothTerm
            Shallow copy of the functional, carrying `K`.
        """
        if not isinstance(K, LinOp):
            raise ValueError(f"K: expected LinOp, got {type(K)}.")
        if self._K is not None:
            msg = f"{self} is already composed with {self._K}: only one linear operator per term is supported."
            raise pfe.ConfigurationError(msg)
        if None not in (self.dim, K.codim) and (self.dim != K.codim):
            raise ValueError(f"Cannot compose {self} with {K}: dimension mismatch.")

        op = copy.copy(self)
        op._K = K
        return op

    def __mul__(self, other) -> "NonSmoothTerm":
        if isinstance(other, LinOp):
            return self.compose(other)
        elif isinstance(other, pft.Real):
            return _ScaledTerm(self, other)
        else:
            return NotImplemented

    def __rmul__(self, other) -> "NonSmoothTerm":
        if isinstance(other, pft.Real):
            return _ScaledTerm(self, other)
        else:
            return NotImplemented

    def __call__(self, arr: pft.NDArray) -> pft.NDArray:
        return self.apply(arr)

    def __repr__(self) -> str:
        expr = f"{self.__class__.__name__}(dim={self.dim})"
        if self._K is not None:
            expr = f"{expr} * {self._K}"
        return expr


class _ScaledTerm(NonSmoothTerm):
    # h(x) = cst * f(x), cst > 0.
    def __init__(self, term: NonSmoothTerm, cst: pft.Real):
        try:
            assert cst > 0
        except Exception:
            raise ValueError(f"cst: expected positive scale, got {cst}.")
        super().__init__(dim=term.dim)
        self._term = term
        self._cst = float(cst)
        self._K = term.K

    def apply(self, arr: pft.NDArray) -> pft.NDArray:
        return self._cst * self._term.apply(arr)

    def prox(self, arr: pft.NDArray, tau: pft.Real) -> pft.NDArray:
        return self._term.prox(arr, tau=self._cst * tau)

    def __repr__(self) -> str:
        return f"{self._cst} * {self._term!r}"
