import enum
import math
import typing as typ

import numpy as np

import pyfbpd.abc as pfa
import pyfbpd.info.deps as pfd
import pyfbpd.info.exception as pfe
import pyfbpd.info.ptype as pft
import pyfbpd.operator as pfo
import pyfbpd.opt.stop as pfst
import pyfbpd.util as pfu

__all__ = [
    "Method",
    "Momentum",
    "ConstantMomentum",
    "NesterovMomentum",
    "momentum",
    "resolve_operator",
    "step_sizes",
    "initialize",
    "iterate",
    "finalize",
    *("FBPD", "FBPrimalDual"),
]

Terms = typ.Sequence[typ.Optional[pfa.NonSmoothTerm]]
State = dict[str, typ.Any]
Params = typ.Mapping[str, typ.Any]


@enum.unique
class Method(enum.Enum):
    """
    Update policy of :py:class:`~pyfbpd.opt.solver.FBPD`.

    * PLAIN: relaxation with a constant weight :math:`\\lambda`.
    * ACCELERATED: Nesterov-type extrapolation.
    """

    PLAIN = "plain"
    ACCELERATED = "accelerated"

    @classmethod
    def from_tag(cls, tag: typ.Union[str, "Method"]) -> "Method":
        """
        Parse a method tag.

        Tags are case-insensitive.  "ista" and "fista" are accepted as aliases of "plain" and "accelerated"
        respectively.
        """
        if isinstance(tag, cls):
            return tag
        try:
            key = tag.strip().lower()
            return cls(_METHOD_ALIAS.get(key, key))
        except Exception:
            tags = [m.value for m in cls] + list(_METHOD_ALIAS)
            raise pfe.ConfigurationError(f"method: expected one of {tags}, got {tag!r}.")


_METHOD_ALIAS = dict(
    ista=Method.PLAIN.value,
    fista=Method.ACCELERATED.value,
)


class Momentum:
    """
    Weight schedule of the primal/dual blending step.

    Each call to :py:meth:`~pyfbpd.opt.solver.Momentum.weight` yields the weight :math:`w` applied in

    .. math::

       x \\leftarrow x + w (p - x), \\qquad z \\leftarrow z + w (q - z).
    """

    def weight(self) -> float:
        raise NotImplementedError

    def clear(self):
        """
        Reset the schedule to its initial state.
        """
        pass


class ConstantMomentum(Momentum):
    """
    Constant relaxation weight.

    A missing relaxation constant is only reported when a weight is requested.
    """

    def __init__(self, lambda_: pft.Real = None):
        if lambda_ is not None:
            try:
                assert lambda_ > 0
            except Exception:
                raise pfe.ConfigurationError(f"lambda: expected positive relaxation constant, got {lambda_}.")
        self._lambda = lambda_

    def weight(self) -> float:
        if self._lambda is None:
            raise pfe.ConfigurationError("lambda: relaxation constant required by the plain method.")
        return self._lambda

    def __repr__(self) -> str:
        return f"ConstantMomentum(lambda_={self._lambda})"


class NesterovMomentum(Momentum):
    r"""
    Nesterov extrapolation weights.

    Starting from :math:`t_{0} = 1`, each call computes

    .. math::

       t_{n+1} = \frac{1 + \sqrt{1 + 4 t_{n}^{2}}}{2}, \qquad w_{n} = \frac{t_{n} - 1}{t_{n+1}}.

    The first weight is 0.  Weights increase strictly and tend to 1.
    """

    def __init__(self):
        self.t = 1.0

    def weight(self) -> float:
        t_next = (1 + math.sqrt(1 + 4 * self.t**2)) / 2
        w = (self.t - 1) / t_next
        self.t = t_next
        return w

    def clear(self):
        self.t = 1.0

    def __repr__(self) -> str:
        return f"NesterovMomentum(t={self.t})"


def momentum(method: typ.Union[str, Method], lambda_: pft.Real = None) -> Momentum:
    """
    Build the weight schedule associated with `method`.

    Parameters
    ----------
    method: str, Method
        Update policy.  (See :py:meth:`~pyfbpd.opt.solver.Method.from_tag`.)
    lambda_: Real
        Relaxation constant.  Ignored by the accelerated method.
    """
    method = Method.from_tag(method)
    if method is Method.PLAIN:
        return ConstantMomentum(lambda_)
    else:
        return NesterovMomentum()


# Shared instance: resolve_operator() must return the same operator for the same terms.
_IDENTITY = pfo.IdentityOp()


def resolve_operator(terms: Terms) -> tuple[tuple[int, int], pfa.LinOp]:
    """
    Decide which non-smooth term is handled on the primal side and which one through the dual variable.

    Parameters
    ----------
    terms: list(NonSmoothTerm)
        The two non-smooth terms.  At most one may carry a linear operator.

    Returns
    -------
    order: tuple(int, int)
        (primal-side index, dual-side index) into `terms`.
    K: LinOp
        Operator of the dual-side term, or the identity if no term carries one.
    """
    if len(terms) != 2:
        raise pfe.ConfigurationError(f"terms: expected 2 non-smooth terms, got {len(terms)}.")

    K0, K1 = [t.K for t in terms]
    if (K0 is not None) and (K1 is not None):
        raise pfe.ConfigurationError("terms: at most one non-smooth term may carry a linear operator.")
    elif K0 is not None:
        return (1, 0), K0
    elif K1 is not None:
        return (0, 1), K1
    else:
        return (0, 1), _IDENTITY


def step_sizes(
    beta: pft.Real,
    nu: pft.Real = 1,
    tau: pft.Real = None,
    sigma: pft.Real = None,
) -> tuple[pft.Real, pft.Real]:
    r"""
    Primal/dual step sizes.

    Parameters
    ----------
    beta: Real
        Lipschitz constant of the smooth term's gradient.
    nu: Real
        Upper bound on :math:`\Vert\mathbf{K}\Vert_{2}^{2}`.
    tau, sigma: Real
        Optional user-pinned primal/dual step.

    Returns
    -------
    tau, sigma: Real

    Notes
    -----
    * Neither step pinned: :math:`\tau = 1/\beta`, :math:`\sigma = \beta/(2\nu)`.
    * `tau` pinned: :math:`\sigma = (1/\tau - \beta/2)/\nu`.
    * `sigma` pinned: :math:`\tau = 1/(\sigma\nu + \beta/2)`.
    * Both pinned: returned unchecked.

    In the first three cases :math:`1/\tau - \sigma\nu = \beta/2`, hence the convergence condition
    :math:`1/\tau - \sigma\Vert\mathbf{K}\Vert_{2}^{2} \ge \beta/2` holds whenever
    :math:`\Vert\mathbf{K}\Vert_{2}^{2} \le \nu`.
    """
    try:
        assert nu > 0
    except Exception:
        raise pfe.ConfigurationError(f"nu: expected positive value, got {nu}.")

    if (tau is None) and (sigma is None):
        if not (0 < beta < math.inf):
            msg = f"beta={beta}: cannot infer step sizes, specify one of Parameter[tau, sigma]."
            raise pfe.ConfigurationError(msg)
        tau = 1 / beta
        sigma = beta / (2 * nu)
    elif sigma is None:
        if not (tau > 0):
            raise pfe.ConfigurationError(f"tau: expected positive step, got {tau}.")
        sigma = (1 / tau - beta / 2) / nu
        if sigma < 0:
            raise pfe.ConfigurationError(f"tau={tau}: step size too large, must not exceed 2/beta={2 / beta}.")
    elif tau is None:
        if not (sigma > 0):
            raise pfe.ConfigurationError(f"sigma: expected positive step, got {sigma}.")
        if not (beta < math.inf):
            raise pfe.ConfigurationError(f"beta={beta}: cannot infer a positive tau, specify Parameter[tau].")
        tau = 1 / (sigma * nu + beta / 2)
    return tau, sigma


def _fill_null(f: typ.Optional[pfa.SmoothTerm], terms: Terms) -> tuple[pfa.SmoothTerm, list[pfa.NonSmoothTerm]]:
    f = pfo.NullFunc() if (f is None) else f
    terms = [pfo.NullFunc() if (t is None) else t for t in terms]
    return f, terms


def initialize(
    x0: pft.NDArray,
    f: typ.Optional[pfa.SmoothTerm],
    terms: Terms,
    params: Params = None,
) -> tuple[pft.NDArray, State, dict]:
    """
    Build the initial FBPD state.

    Parameters
    ----------
    x0: NDArray
        (..., N) initial point.  Not modified.  Integer inputs are promoted to double precision.
    f: SmoothTerm
        Smooth term.  ``None`` stands for the null functional.
    terms: list(NonSmoothTerm)
        The two non-smooth terms.  ``None`` entries stand for the null functional.
    params: ~collections.abc.Mapping
        Algorithm parameters: `rescale`, `nu`, `method`, `tau`, `sigma`, `lambda`.

    Returns
    -------
    x: NDArray
        Copy of `x0`, promoted to floating point if needed.
    state: dict
        Algorithm state, to be fed to :py:func:`~pyfbpd.opt.solver.fbpd.iterate`.
    params: dict
        Sanitized copy of `params`, annotated with the `abs_tol` and `use_dual` driver hints.
    """
    params = dict() if (params is None) else dict(params)
    params.setdefault("rescale", False)
    params.setdefault("nu", 1)
    params.setdefault("method", Method.PLAIN.value)

    if params["rescale"]:
        raise pfe.ConfigurationError("rescale: automatic step-size rescaling is not supported.")
    if len(terms) != 2:
        raise pfe.ConfigurationError(f"terms: expected 2 non-smooth terms, got {len(terms)}.")

    f, terms = _fill_null(f, terms)
    order, K = resolve_operator(terms)
    tau, sigma = step_sizes(
        beta=f.diff_lipschitz,
        nu=params["nu"],
        tau=params.get("tau"),
        sigma=params.get("sigma"),
    )
    method = Method.from_tag(params["method"])
    mom = momentum(method, params.get("lambda"))

    xp = pfu.get_array_module(x0)
    dtype = x0.dtype if np.issubdtype(x0.dtype, np.inexact) else np.double
    x = x0.astype(dtype, copy=True)
    z = pfu.snapshot(K.apply(x))
    state = dict(
        f=f,
        terms=terms,
        tau=tau,
        sigma=sigma,
        method=method,
        momentum=mom,
        z=z,
        p=pfu.snapshot(x),
        q=xp.zeros_like(z),
        order=order,
        K=K,
        weight=None,
        dual_var=pfu.snapshot(z),
    )

    params["method"] = method
    params.setdefault("abs_tol", True)
    params.setdefault("use_dual", True)
    return x, state, params


def iterate(
    f: typ.Optional[pfa.SmoothTerm],
    terms: Terms,
    x: pft.NDArray,
    state: State,
    params: Params,
) -> tuple[pft.NDArray, State]:
    r"""
    Perform one FBPD iteration.

    With :math:`(i, j)` = ``state["order"]``:

    .. math::

       p &= \text{prox}_{\tau h_{i}}\big(x - \tau(\nabla f(x) + \mathbf{K}^{T} z)\big) \\
       q &= \text{prox}_{\sigma h_{j}^{\ast}}\big(z + \sigma \mathbf{K}(2p - x)\big) \\
       x &\leftarrow x + w (p - x), \qquad z \leftarrow z + w (q - z).

    `x` and ``state["z"]`` are updated in-place when the array backend allows it.  `x` is always returned.
    Dask iterates are persisted after each call.

    ``None`` entries of `f` / `terms` resolve to the null functionals built by
    :py:func:`~pyfbpd.opt.solver.fbpd.initialize`.
    """
    f = state["f"] if (f is None) else f
    terms = [state["terms"][k] if (t is None) else t for (k, t) in enumerate(terms)]
    i, j = state["order"]
    K = state["K"]
    tau, sigma = state["tau"], state["sigma"]
    z = state["z"]

    g = f.grad(x)
    p = terms[i].prox(x - tau * (g + K.adjoint(z)), tau)
    q = terms[j].fenchel_prox(z + sigma * K.apply(2 * p - x), sigma)

    w = state["momentum"].weight()
    x += w * (p - x)
    z += w * (q - z)
    if pfd.NDArrayInfo.from_obj(x) is pfd.NDArrayInfo.DASK:
        # bound task-graph depth across iterations
        x, z, p, q = pfu.compute(x, z, p, q, mode="persist")

    state.update(
        z=z,
        p=p,
        q=q,
        weight=w,
        dual_var=pfu.snapshot(z),
    )
    return x, state


def finalize(x: pft.NDArray, state: State = None, params: Params = None) -> pft.NDArray:
    """
    Output the solution.  (No post-processing.)
    """
    return x


class FBPD(pfa.Solver):
    r"""
    Forward-Backward Primal-Dual splitting (FBPD).

    FBPD solves minimization problems of the form

    .. math::

       {\min_{\mathbf{x}\in\mathbb{R}^N} \;\mathcal{F}(\mathbf{x})\;\;+\;\;\mathcal{G}(\mathbf{x})\;\;+\;\;
       \mathcal{H}(\mathbf{K} \mathbf{x}),}

    where:

    * :math:`\mathcal{F}:\mathbb{R}^N\rightarrow \mathbb{R}` is *convex* and *differentiable*, with
      :math:`\beta`-*Lipschitz continuous* gradient, for some :math:`\beta\geq 0`.
    * :math:`\mathcal{G}` and :math:`\mathcal{H}` are *proper*, *lower semicontinuous* and *convex functions* with
      *simple proximal operators*.
    * :math:`\mathbf{K}` is a *linear operator*, attached to at most one of the two non-smooth terms.  (See
      :py:meth:`~pyfbpd.abc.NonSmoothTerm.compose`.)

    The non-smooth term carrying :math:`\mathbf{K}` (the 2nd one if neither does) is handled in the dual through its
    Fenchel conjugate.

    Remarks
    -------
    * Step sizes are derived from :math:`\beta` and :math:`\nu` unless pinned.  (See
      :py:func:`~pyfbpd.opt.solver.fbpd.step_sizes`.)  :math:`\nu` must upper-bound
      :math:`\Vert\mathbf{K}\Vert_{2}^{2}`; a strict bound is safer when combined with unit relaxation.
    * With ``method="accelerated"`` the first iteration applies a zero weight and hence leaves the state unchanged.
      The default stopping criterion accounts for it.

    ``FBPD.fit()`` **Parameterization**

    x0: NDArray
        (..., N) initial point(s).
    tau: Real
        Primal step size.
    sigma: Real
        Dual step size.
    nu: Real
        Upper bound on the squared operator norm.  (Default: 1.)
    method: str
        "plain" (default) or "accelerated".
    lambda_: Real
        Relaxation constant.  Required by the plain method.
    rescale: bool
        Automatic step-size rescaling.  Unsupported: must be False.
    abs_tol: bool
        Default stopping criterion measures absolute (True, default) or relative (False) change of the iterates.
    use_dual: bool
        Default stopping criterion also monitors the dual variable.  (Default: True.)

    Example
    -------
    .. code-block:: python3

       import numpy as np
       from pyfbpd.operator import L1Norm, PositiveOrthant, SquaredL2Loss
       from pyfbpd.opt.solver import FBPD
       from pyfbpd.opt.stop import MaxIter

       y = np.r_[2.0, -1.0, 0.7]
       slvr = FBPD(f=SquaredL2Loss(data=y), terms=(0.5 * L1Norm(), PositiveOrthant()))
       slvr.fit(x0=np.zeros(3), nu=2, lambda_=1, stop_crit=MaxIter(200))
       x = slvr.solution()  # ~ [1.5, 0, 0.2]
    """

    def __init__(
        self,
        f: typ.Optional[pfa.SmoothTerm] = None,
        terms: Terms = (None, None),
        **kwargs,
    ):
        kwargs.update(log_var=kwargs.get("log_var", ("x", "z")))
        super().__init__(**kwargs)
        self._f, self._terms = _fill_null(f, terms)
        self._params = None

    def m_init(
        self,
        x0: pft.NDArray,
        tau: typ.Optional[pft.Real] = None,
        sigma: typ.Optional[pft.Real] = None,
        nu: pft.Real = 1,
        method: typ.Union[str, Method] = "plain",
        lambda_: typ.Optional[pft.Real] = None,
        rescale: bool = False,
        abs_tol: typ.Optional[bool] = None,
        use_dual: typ.Optional[bool] = None,
    ):
        params = dict(nu=nu, method=method, rescale=rescale)
        for k, v in [("tau", tau), ("sigma", sigma), ("lambda", lambda_), ("abs_tol", abs_tol), ("use_dual", use_dual)]:
            if v is not None:
                params[k] = v

        x, state, self._params = initialize(x0, self._f, self._terms, params)
        mst = self._mstate  # shorthand
        mst["x"] = x
        mst.update(state)

        i, j = mst["order"]
        msg = " ".join(
            [
                f"FBPD: method={mst['method'].value}, tau={mst['tau']}, sigma={mst['sigma']},",
                f"primal-side={self._terms[i]}, dual-side={self._terms[j]}, K={mst['K']}",
            ]
        )
        self._astate["logger"].debug(msg)

    def m_step(self):
        mst = self._mstate  # shorthand
        mst["x"], _ = iterate(self._f, self._terms, mst["x"], mst, self._params)

    def default_stop_crit(self) -> pfa.StoppingCriterion:
        crit = pfst.AbsChange if self._params["abs_tol"] else pfst.RelError
        stop_crit = crit(eps=1e-4, var="x")
        if self._params["use_dual"]:
            stop_crit &= crit(eps=1e-4, var="z")
        return pfst.MaxIter(n=2) & stop_crit  # grace period: 1st accelerated step is a no-op.

    def objective_func(self) -> pft.NDArray:
        x = self._mstate["x"]
        i, j = self._mstate["order"]
        K = self._mstate["K"]
        return self._f(x) + self._terms[i](x) + self._terms[j](K(x))

    def solution(self, which: typ.Literal["primal", "dual"] = "primal") -> pft.NDArray:
        """
        Parameters
        ----------
        which: "primal", "dual"
            Variable to return.

        Returns
        -------
        x: NDArray
            (..., N) primal solution, or (..., M) dual solution.
        """
        data, _ = self.stats()
        if which == "primal":
            assert "x" in data.keys(), "Primal variable x was not logged (declare it in log_var to log it)."
            return finalize(data.get("x"))
        elif which == "dual":
            assert "z" in data.keys(), "Dual variable z was not logged (declare it in log_var to log it)."
            return data.get("z")
        else:
            raise ValueError(f"Parameter which must be one of ['primal', 'dual'] got: {which}.")


FBPrimalDual = FBPD  #: Alias of :py:class:`~pyfbpd.opt.solver.FBPD`.
