import collections.abc as cabc
import datetime as dt
import warnings

import numpy as np

import pyfbpd.abc as pfa
import pyfbpd.info.ptype as pft
import pyfbpd.util as pfu

__all__ = [
    "AbsChange",
    "AbsError",
    "ManualStop",
    "MaxDuration",
    "MaxIter",
    "Memorize",
    "RelError",
]

SVFunction = cabc.Callable[[pft.NDArray], pft.NDArray]


def _norm(x: pft.NDArray, ord: pft.Real, rank: pft.Integer) -> pft.NDArray:
    # (..., M1,...,MD) -> (..., 1): `ord`-norm over the trailing `rank` axes.
    xp = pfu.get_array_module(x)
    reduce = dict(axis=tuple(range(-rank, 0)), keepdims=True)
    ax = xp.fabs(x)
    if ord == 0:
        return (ax > 0).sum(**reduce)
    elif ord == np.inf:
        return ax.max(**reduce)
    elif ord == 1:
        return ax.sum(**reduce)
    elif ord == 2:
        return xp.sqrt((ax**2).sum(**reduce))
    else:
        return ((ax**ord).sum(**reduce)) ** (1 / ord)


def _summary(label: str, val: np.ndarray) -> dict[str, float]:
    # Scalar statistics of per-point values, as reported by StoppingCriterion.info().
    if val.size == 1:
        return {label: float(val.max())}
    else:
        return {
            f"{label}_min": float(val.min()),
            f"{label}_max": float(val.max()),
        }


class MaxIter(pfa.StoppingCriterion):
    """
    Stop iterative solver after a fixed number of iterations.

    .. note::

       AND-ing :py:class:`~pyfbpd.opt.stop.MaxIter` with another criterion gives the solver a grace period:

       .. code-block:: python3

          sc = MaxIter(n=5) & RelError(eps=1e-3)
          # N_iter < 5  -> never stop.
          # N_iter >= 5 -> stop once RelError() agrees.
    """

    def __init__(self, n: pft.Integer):
        """
        Parameters
        ----------
        n: Integer
            Max number of iterations allowed.
        """
        try:
            assert int(n) > 0
            self._n = int(n)
        except Exception:
            raise ValueError(f"n: expected positive integer, got {n}.")
        self._i = 0

    def stop(self, state: cabc.Mapping) -> bool:
        self._i += 1
        return self._i > self._n

    def info(self) -> cabc.Mapping[str, float]:
        return dict(N_iter=self._i)

    def clear(self):
        self._i = 0


class ManualStop(pfa.StoppingCriterion):
    """
    Never-firing criterion.

    Hands the stopping decision over to the user when :py:meth:`~pyfbpd.abc.Solver.fit` runs with mode=MANUAL (stop
    pulling from :py:meth:`~pyfbpd.abc.Solver.steps`) or mode=ASYNC (call :py:meth:`~pyfbpd.abc.Solver.stop`).
    """

    def stop(self, state: cabc.Mapping) -> bool:
        return False

    def info(self) -> cabc.Mapping[str, float]:
        return dict()


class MaxDuration(pfa.StoppingCriterion):
    """
    Stop iterative solver once a wall-clock budget is exhausted.

    The clock starts at construction, and restarts on :py:meth:`~pyfbpd.abc.StoppingCriterion.clear`.
    """

    def __init__(self, t: dt.timedelta):
        try:
            assert t > dt.timedelta()
            self._t_max = t
        except Exception:
            raise ValueError(f"t: expected positive duration, got {t}.")
        self.clear()

    def stop(self, state: cabc.Mapping) -> bool:
        self._elapsed = dt.datetime.now() - self._t0
        return self._elapsed > self._t_max

    def info(self) -> cabc.Mapping[str, float]:
        return dict(duration=self._elapsed.total_seconds())

    def clear(self):
        self._t0 = dt.datetime.now()
        self._elapsed = dt.timedelta()


class Memorize(pfa.StoppingCriterion):
    """
    Record a scalar/1D variable of the solver's math state without ever stopping.

    Used by :py:class:`~pyfbpd.abc.Solver` to track the objective function when ``track_objective=True``.
    """

    def __init__(self, var: pft.VarName):
        self._var = var
        self.clear()

    def stop(self, state: cabc.Mapping) -> bool:
        val = state[self._var]
        val = np.atleast_1d(val) if isinstance(val, pft.Real) else val
        assert val.ndim == 1, f"{self._var}: expected scalar or 1D array, got shape {val.shape}."
        self._val = pfu.compute(val)
        return False

    def info(self) -> cabc.Mapping[str, float]:
        return _summary(f"Memorize[{self._var}]", self._val)

    def clear(self):
        self._val = np.zeros(1)


class _NormCriterion(pfa.StoppingCriterion):
    # Shared machinery of criteria thresholding the Ln norm of `f(_mstate[var])`.
    _label = None

    def __init__(
        self,
        eps: pft.Real,
        var: pft.VarName = "x",
        rank: pft.Integer = 1,
        f: SVFunction = None,
        norm: pft.Real = 2,
        satisfy_all: bool = True,
    ):
        """
        Parameters
        ----------
        eps: Real
            Positive threshold.
        var: VarName
            Variable in :py:attr:`pyfbpd.abc.Solver._mstate` to query.  Must hold an NDArray.
        rank: Integer
            Array rank K of the monitored variable **after** applying `f`.
        f: ~collections.abc.Callable
            Optional function pre-applied to ``_mstate[var]`` before taking the norm: (..., M1,...,MD) ->
            (..., N1,...,NK).  Defaults to the identity.
        norm: Integer, Real
            Ln norm to use >= 0.  (Default: L2.)
        satisfy_all: bool
            If True (default) and ``_mstate[var]`` holds several evaluation points, stop only once all of them lie
            below threshold.  Otherwise any one suffices.
        """
        try:
            assert eps > 0
            self._eps = eps
        except Exception:
            raise ValueError(f"eps: expected positive threshold, got {eps}.")

        self._var = var
        self._rank = int(rank)
        self._f = f if (f is not None) else (lambda _: _)

        try:
            assert norm >= 0
            self._norm = norm
        except Exception:
            raise ValueError(f"norm: expected non-negative, got {norm}.")

        self._satisfy_all = satisfy_all
        self.clear()

    def _decide(self, xp: pft.ArrayModule, passed: pft.NDArray) -> pft.NDArray:
        rule = xp.all if self._satisfy_all else xp.any
        return rule(passed)

    def info(self) -> cabc.Mapping[str, float]:
        return _summary(f"{self._label}[{self._var}]", self._val)

    def clear(self):
        self._val = np.r_[0]  # last computed norm(s) in stop().


class AbsError(_NormCriterion):
    """
    Stop iterative solver once the absolute norm of a variable (or function thereof) reaches threshold.
    """

    _label = "AbsError"

    def stop(self, state: cabc.Mapping) -> bool:
        fx = self._f(state[self._var])  # (..., N1,...,NK)
        self._val = _norm(fx, ord=self._norm, rank=self._rank)  # (..., 1)

        xp = pfu.get_array_module(fx)
        decision = self._decide(xp, self._val <= self._eps)

        self._val, decision = pfu.compute(self._val, decision)
        return decision


class _ChangeCriterion(_NormCriterion):
    # Criteria comparing `var` against its value at the previous stop() call.

    def stop(self, state: cabc.Mapping) -> bool:
        x = state[self._var]  # (..., M1,...,MD)

        if self._x_prev is None:
            self._x_prev = x.copy()  # `x` may be updated in-place by the solver.
            fx_prev = self._f(self._x_prev)

            # force 1st .info() call to have same format as further calls.
            sh = fx_prev.shape[: -self._rank]
            self._val = np.zeros(shape=(*sh, 1))
            return False  # insufficient history.
        else:
            xp = pfu.get_array_module(x)
            fx_prev = self._f(self._x_prev)  # (..., N1,...,NK)
            delta = _norm(self._f(x) - fx_prev, ord=self._norm, rank=self._rank)  # (..., 1)
            self._val, passed = self._compare(xp, delta, fx_prev)
            decision = self._decide(xp, passed)
            self._x_prev = x.copy()

            self._x_prev, self._val, decision = pfu.compute(self._x_prev, self._val, decision)
            return decision

    def _compare(self, xp, delta, fx_prev) -> tuple[pft.NDArray, pft.NDArray]:
        # Returns (statistic, passed) pair, both (..., 1).
        raise NotImplementedError

    def clear(self):
        super().clear()
        self._x_prev = None  # buffered var from last query.


class RelError(_ChangeCriterion):
    r"""
    Stop iterative solver once the relative change of a variable (or function thereof) reaches threshold, i.e.

    .. math::

       \Vert f(x_{k}) - f(x_{k-1}) \Vert \le \epsilon \Vert f(x_{k-1}) \Vert.
    """

    _label = "RelError"

    def _compare(self, xp, delta, fx_prev):
        scale = _norm(fx_prev, ord=self._norm, rank=self._rank)
        passed = delta <= self._eps * scale

        with warnings.catch_warnings():
            # 0/0 -> NaN: reported as no relative change.
            warnings.simplefilter("ignore")
            val = delta / scale
            val = xp.where(xp.isnan(val), 0, val)
        return val, passed


class AbsChange(_ChangeCriterion):
    r"""
    Stop iterative solver once the absolute change of a variable (or function thereof) reaches threshold, i.e.

    .. math::

       \Vert f(x_{k}) - f(x_{k-1}) \Vert \le \epsilon.

    Unlike :py:class:`~pyfbpd.opt.stop.RelError`, the decision is well-defined when the variable converges to 0.
    """

    _label = "AbsChange"

    def _compare(self, xp, delta, fx_prev):
        return delta, delta <= self._eps
