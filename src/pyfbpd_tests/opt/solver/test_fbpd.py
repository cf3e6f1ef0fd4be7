import math

import dask.array as da
import numpy as np
import pytest
import scipy.sparse as sp

import pyfbpd.abc as pfa
import pyfbpd.info.exception as pfe
import pyfbpd.operator as pfo
import pyfbpd.opt.solver as pfsl
import pyfbpd.opt.stop as pfst
import pyfbpd.util as pfu
import pyfbpd_tests.conftest as ct

GOLDEN = (1 + math.sqrt(5)) / 2


class Quadratic(pfa.SmoothTerm):
    # f(x) = (beta / 2) |x|^2
    def __init__(self, beta: float):
        super().__init__()
        self._beta = beta
        self.diff_lipschitz = beta

    def apply(self, arr):
        return 0.5 * self._beta * (arr**2).sum(axis=-1, keepdims=True)

    def grad(self, arr):
        return self._beta * arr


class CountingSmooth(pfa.SmoothTerm):
    def __init__(self, f: pfa.SmoothTerm):
        super().__init__()
        self._f = f
        self.diff_lipschitz = f.diff_lipschitz
        self.n_grad = 0

    def apply(self, arr):
        return self._f.apply(arr)

    def grad(self, arr):
        self.n_grad += 1
        return self._f.grad(arr)


class CountingTerm(pfa.NonSmoothTerm):
    def __init__(self, h: pfa.NonSmoothTerm):
        super().__init__(dim=h.dim)
        self._h = h
        self.n_prox = 0
        self.n_fenchel_prox = 0

    def apply(self, arr):
        return self._h.apply(arr)

    def prox(self, arr, tau):
        self.n_prox += 1
        return self._h.prox(arr, tau)

    def fenchel_prox(self, arr, sigma):
        self.n_fenchel_prox += 1
        return self._h.fenchel_prox(arr, sigma)


def nonneg_lasso(y: np.ndarray, lam: float) -> np.ndarray:
    # argmin_{x >= 0} 0.5 |x - y|^2 + lam |x|_1
    return np.fmax(y - lam, 0)


class TestStepSizes:
    @pytest.mark.parametrize("beta", [0.5, 1, 2, 10, 1e3])
    @pytest.mark.parametrize("nu", [0.25, 1, 4])
    def test_default(self, beta, nu):
        tau, sigma = pfsl.step_sizes(beta=beta, nu=nu)
        assert tau == 1 / beta
        assert sigma == beta / (2 * nu)

    @pytest.mark.parametrize(
        ["beta", "nu", "tau"],
        [
            [2, 1, 0.25],
            [2, 4, 1],
            [0, 1, 3],  # no smooth term
            [1, 0.5, 2],  # boundary: sigma = 0
        ],
    )
    def test_tau_pinned(self, beta, nu, tau):
        _tau, sigma = pfsl.step_sizes(beta=beta, nu=nu, tau=tau)
        assert _tau == tau
        assert sigma >= 0
        assert np.isclose(1 / tau - sigma * nu, beta / 2)

    @pytest.mark.parametrize(
        ["beta", "nu", "sigma"],
        [
            [2, 1, 0.25],
            [0, 1, 3],
            [10, 2, 1e-3],
        ],
    )
    def test_sigma_pinned(self, beta, nu, sigma):
        tau, _sigma = pfsl.step_sizes(beta=beta, nu=nu, sigma=sigma)
        assert _sigma == sigma
        assert tau == 1 / (sigma * nu + beta / 2)

    def test_both_pinned_unchecked(self):
        assert pfsl.step_sizes(beta=2, nu=1, tau=10, sigma=10) == (10, 10)

    @pytest.mark.parametrize(
        "kwargs",
        [
            dict(beta=2, nu=1, tau=1.5),  # step size too large
            dict(beta=1, nu=1, tau=100),
            dict(beta=math.inf, nu=1, tau=1),
            dict(beta=2, nu=0),
            dict(beta=2, nu=-1),
            dict(beta=0, nu=1),  # nothing to infer step sizes from
            dict(beta=math.inf, nu=1),
            dict(beta=math.inf, nu=1, sigma=1),  # tau would vanish
            dict(beta=2, nu=1, tau=0),
            dict(beta=2, nu=1, sigma=-1),
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(pfe.ConfigurationError):
            pfsl.step_sizes(**kwargs)

    def test_negative_sigma_leaves_inputs_untouched(self):
        x0 = np.ones(5)
        params = dict(tau=1.5, method="plain", **{"lambda": 1})
        params_before = dict(params)

        with pytest.raises(pfe.ConfigurationError):
            pfsl.initialize(x0, Quadratic(2), [pfo.L1Norm(), pfo.PositiveOrthant()], params)
        assert params == params_before
        assert np.array_equal(x0, np.ones(5))


class TestMomentum:
    def test_nesterov(self):
        m = pfsl.NesterovMomentum()
        assert m.t == 1
        w = [m.weight() for _ in range(200)]

        assert w[0] == 0
        assert all(a < b for (a, b) in zip(w[:-1], w[1:]))
        assert all(_w < 1 for _w in w)
        assert w[-1] > 0.95

    def test_nesterov_clear(self):
        m = pfsl.NesterovMomentum()
        w1 = [m.weight() for _ in range(5)]
        m.clear()
        w2 = [m.weight() for _ in range(5)]
        assert w1 == w2

    def test_constant(self):
        m = pfsl.ConstantMomentum(lambda_=0.7)
        assert [m.weight() for _ in range(3)] == [0.7] * 3

    def test_constant_missing_lambda(self):
        m = pfsl.ConstantMomentum()
        with pytest.raises(pfe.ConfigurationError):
            m.weight()

    @pytest.mark.parametrize("lambda_", [0, -1])
    def test_constant_invalid_lambda(self, lambda_):
        with pytest.raises(pfe.ConfigurationError):
            pfsl.ConstantMomentum(lambda_=lambda_)

    @pytest.mark.parametrize(
        ["tag", "klass"],
        [
            ["plain", pfsl.ConstantMomentum],
            ["PLAIN", pfsl.ConstantMomentum],
            ["ista", pfsl.ConstantMomentum],
            ["ISTA", pfsl.ConstantMomentum],
            [pfsl.Method.PLAIN, pfsl.ConstantMomentum],
            ["accelerated", pfsl.NesterovMomentum],
            [" Accelerated ", pfsl.NesterovMomentum],
            ["FISTA", pfsl.NesterovMomentum],
            [pfsl.Method.ACCELERATED, pfsl.NesterovMomentum],
        ],
    )
    def test_factory(self, tag, klass):
        assert isinstance(pfsl.momentum(tag, lambda_=1), klass)

    @pytest.mark.parametrize("tag", ["newton", "", None, 1])
    def test_factory_unknown_method(self, tag):
        with pytest.raises(pfe.ConfigurationError):
            pfsl.momentum(tag, lambda_=1)


class TestResolveOperator:
    def test_no_operator(self):
        terms = [pfo.L1Norm(), pfo.PositiveOrthant()]
        order, K = pfsl.resolve_operator(terms)
        assert order == (0, 1)
        assert isinstance(K, pfo.IdentityOp)

    def test_operator_on_first_term(self):
        D = pfo.FiniteDifference(5)
        terms = [pfo.L1Norm(4) * D, pfo.PositiveOrthant()]
        order, K = pfsl.resolve_operator(terms)
        assert order == (1, 0)
        assert K is D

    def test_operator_on_second_term(self):
        D = pfo.FiniteDifference(5)
        terms = [pfo.PositiveOrthant(), pfo.L1Norm(4) * D]
        order, K = pfsl.resolve_operator(terms)
        assert order == (0, 1)
        assert K is D

    @pytest.mark.parametrize("with_op", [True, False])
    def test_idempotent(self, with_op):
        h = pfo.L1Norm()
        if with_op:
            h = h * pfo.HomothetyOp(cst=3)
        terms = [h, pfo.Box(lower=-1, upper=1)]

        out1 = pfsl.resolve_operator(terms)
        out2 = pfsl.resolve_operator(terms)
        assert out1[0] == out2[0]
        assert out1[1] is out2[1]

    def test_two_operators(self):
        terms = [
            pfo.L1Norm() * pfo.HomothetyOp(cst=2),
            pfo.PositiveOrthant() * pfo.HomothetyOp(cst=3),
        ]
        with pytest.raises(pfe.ConfigurationError):
            pfsl.resolve_operator(terms)

    @pytest.mark.parametrize("N_term", [0, 1, 3])
    def test_wrong_term_count(self, N_term):
        terms = [pfo.L1Norm() for _ in range(N_term)]
        with pytest.raises(pfe.ConfigurationError):
            pfsl.resolve_operator(terms)


class TestInitialize:
    def test_scenario_plain(self):
        # identity operator, beta = 2, nu = 1, plain method
        x0 = np.arange(4.0)
        x, state, params = pfsl.initialize(
            x0,
            Quadratic(2),
            [pfo.L1Norm(), pfo.PositiveOrthant()],
            dict(nu=1, method="plain", **{"lambda": 1}),
        )
        assert state["tau"] == 0.5
        assert state["sigma"] == 1.0
        assert state["method"] is pfsl.Method.PLAIN
        assert isinstance(state["momentum"], pfsl.ConstantMomentum)
        assert state["order"] == (0, 1)
        assert state["weight"] is None

        assert x is not x0
        assert np.array_equal(x, x0)
        assert np.array_equal(state["z"], x0)
        assert state["z"] is not x
        assert np.array_equal(state["dual_var"], state["z"])
        assert np.array_equal(state["q"], np.zeros(4))

        assert params["abs_tol"] is True
        assert params["use_dual"] is True
        assert params["rescale"] is False

    def test_defaults(self):
        x, state, params = pfsl.initialize(np.zeros(3), Quadratic(1), [pfo.L1Norm(), pfo.PositiveOrthant()])
        assert params["nu"] == 1
        assert params["method"] is pfsl.Method.PLAIN
        assert (state["tau"], state["sigma"]) == (1, 0.5)

    def test_caller_hints_kept(self):
        _, _, params = pfsl.initialize(
            np.zeros(3),
            Quadratic(1),
            [pfo.L1Norm(), pfo.PositiveOrthant()],
            dict(abs_tol=False, use_dual=False),
        )
        assert params["abs_tol"] is False
        assert params["use_dual"] is False

    def test_dual_variable_shape(self):
        D = pfo.FiniteDifference(6)
        x0 = np.arange(6.0)
        _, state, _ = pfsl.initialize(x0, Quadratic(1), [pfo.PositiveOrthant(), pfo.L1Norm(5) * D])
        assert state["z"].shape == (5,)
        assert np.allclose(state["z"], 1)

    def test_null_terms(self):
        x, state, _ = pfsl.initialize(np.ones(3), None, [pfo.L1Norm(), None], dict(tau=1))
        assert state["tau"] == 1
        assert state["sigma"] == 1

    @pytest.mark.parametrize("N_term", [1, 3])
    def test_wrong_term_count(self, N_term):
        terms = [pfo.L1Norm() for _ in range(N_term)]
        with pytest.raises(pfe.ConfigurationError, match="non-smooth terms"):
            pfsl.initialize(np.zeros(3), Quadratic(1), terms, dict(method="plain"))

    def test_rescale_rejected_first(self):
        # Invalid term count and step sizes are not reached.
        terms = [pfo.L1Norm() for _ in range(3)]
        with pytest.raises(pfe.ConfigurationError, match="rescale"):
            pfsl.initialize(np.zeros(3), Quadratic(math.inf), terms, dict(rescale=True))

    def test_unknown_method(self):
        with pytest.raises(pfe.ConfigurationError, match="method"):
            pfsl.initialize(np.zeros(3), Quadratic(1), [pfo.L1Norm(), None], dict(method="newton"))

    def test_integer_x0(self):
        x0 = np.r_[3, -1, 2]
        f, terms = Quadratic(1), [pfo.L1Norm(), pfo.PositiveOrthant()]
        x, state, params = pfsl.initialize(x0, f, terms, {"lambda": 1})
        assert x.dtype == np.double
        assert x0.dtype.kind == "i"

        x, state = pfsl.iterate(f, terms, x, state, params)
        assert np.allclose(x, state["p"])

    def test_float_x0_keeps_precision(self):
        x0 = np.ones(3, dtype=np.single)
        x, _, _ = pfsl.initialize(x0, Quadratic(1), [None, None], {"lambda": 1})
        assert x.dtype == np.single
        assert x is not x0


class TestIterate:
    def test_scenario_accelerated(self):
        x0 = np.r_[1.0, -2.0, 3.0]
        f, terms = Quadratic(2), [pfo.L1Norm(), pfo.PositiveOrthant()]
        x, state, params = pfsl.initialize(x0, f, terms, dict(nu=1, method="accelerated"))
        assert (state["tau"], state["sigma"]) == (0.5, 1.0)
        assert state["momentum"].t == 1

        x, state = pfsl.iterate(f, terms, x, state, params)
        assert np.isclose(state["momentum"].t, GOLDEN)
        assert state["weight"] == 0
        assert np.array_equal(x, x0)  # zero weight: no move

    def test_missing_lambda(self):
        f, terms = Quadratic(1), [pfo.L1Norm(), pfo.PositiveOrthant()]
        x, state, params = pfsl.initialize(np.ones(3), f, terms, dict(method="plain"))
        with pytest.raises(pfe.ConfigurationError, match="lambda"):
            pfsl.iterate(f, terms, x, state, params)

    def test_evaluation_count(self):
        f = CountingSmooth(Quadratic(1))
        g = CountingTerm(pfo.L1Norm())
        h = CountingTerm(pfo.PositiveOrthant())
        x, state, params = pfsl.initialize(np.ones(4), f, [g, h], {"lambda": 1})
        pfsl.iterate(f, [g, h], x, state, params)

        assert f.n_grad == 1
        assert (g.n_prox, g.n_fenchel_prox) == (1, 0)
        assert (h.n_prox, h.n_fenchel_prox) == (0, 1)

    def test_null_terms_reused(self, monkeypatch):
        x, state, params = pfsl.initialize(np.ones(3), None, [pfo.L1Norm(), None], dict(tau=1, **{"lambda": 1}))
        null = state["terms"][1]
        assert isinstance(state["f"], pfo.NullFunc)
        assert isinstance(null, pfo.NullFunc)

        def _no_new_null(*args, **kwargs):
            raise AssertionError("null functional rebuilt")

        monkeypatch.setattr(pfo, "NullFunc", _no_new_null)
        for _ in range(3):
            x, state = pfsl.iterate(None, [pfo.L1Norm(), None], x, state, params)
        assert state["terms"][1] is null

    def test_dask_state_persisted(self):
        f = pfo.SquaredL2Loss(data=da.from_array(np.r_[2.0, -1.0, 0.7]))
        terms = [0.5 * pfo.L1Norm(), pfo.PositiveOrthant()]
        x, state, params = pfsl.initialize(da.zeros(3), f, terms, dict(nu=2, **{"lambda": 1}))
        for _ in range(300):
            x, state = pfsl.iterate(f, terms, x, state, params)

        # persisted collections only hold their own chunks
        assert len(dict(x.__dask_graph__())) == x.npartitions
        assert len(dict(state["z"].__dask_graph__())) == state["z"].npartitions
        assert np.allclose(x.compute(), [1.5, 0, 0.2], atol=1e-6)

    def test_inplace_update(self):
        f, terms = Quadratic(1), [pfo.L1Norm(), pfo.PositiveOrthant()]
        x, state, params = pfsl.initialize(np.r_[3.0, -1.0], f, terms, {"lambda": 1})
        z = state["z"]
        x_out, state = pfsl.iterate(f, terms, x, state, params)

        assert x_out is x
        assert state["z"] is z
        assert state["dual_var"] is not z
        assert np.array_equal(state["dual_var"], z)
        assert state["weight"] == 1

    @pytest.mark.parametrize("method", ["plain", "accelerated"])
    @pytest.mark.parametrize("lambda_", [0.3, 1, 1.7])
    def test_fixed_point(self, method, lambda_):
        # x = y, z = 0 is a fixed point of min 0.5 |x - y|^2: the blend must leave it unchanged.
        y = np.r_[0.5, -1.0, 2.0]
        f = pfo.SquaredL2Loss(data=y)
        terms = [None, None]
        x, state, params = pfsl.initialize(y, f, terms, dict(method=method, **{"lambda": lambda_}))
        state["z"][...] = 0
        for _ in range(3):  # non-zero accelerated weights
            state["momentum"].weight()

        x, state = pfsl.iterate(f, terms, x, state, params)
        assert np.array_equal(state["p"], y)
        assert np.array_equal(state["q"], np.zeros(3))
        assert state["weight"] > 0
        assert np.array_equal(x, y)
        assert np.array_equal(state["z"], np.zeros(3))

    def test_finalize(self):
        x = np.ones(3)
        assert pfsl.finalize(x, dict(), dict()) is x


class TestConvergence:
    y = np.r_[2.0, -1.0, 0.7, 3.5, -0.2, 0.0]
    lam = 0.5

    @staticmethod
    def _run(f, terms, x0, params, n_iter):
        x, state, params = pfsl.initialize(x0, f, terms, params)
        for _ in range(n_iter):
            x, state = pfsl.iterate(f, terms, x, state, params)
        return pfsl.finalize(x, state, params)

    @pytest.mark.parametrize("method", ["plain", "accelerated"])
    @pytest.mark.parametrize(
        ["K", "nu"],
        [
            [None, 2],
            [pfo.HomothetyOp(cst=2), 8],
            [pfo.ExplicitLinOp(2 * np.eye(6)), 8],
            [pfo.ExplicitLinOp(sp.diags(np.full(6, 2.0))), 8],
        ],
    )
    def test_nonneg_lasso(self, method, K, nu):
        f = pfo.SquaredL2Loss(data=self.y)
        g = self.lam * pfo.L1Norm()
        h = pfo.PositiveOrthant()
        if K is not None:
            h = h * K  # i_{+}(2x) = i_{+}(x)

        x = self._run(f, [g, h], np.zeros(6), dict(nu=nu, method=method, **{"lambda": 1}), 500)
        assert np.allclose(x, nonneg_lasso(self.y, self.lam), atol=1e-6)

    def test_operator_on_first_term(self):
        f = pfo.SquaredL2Loss(data=self.y)
        terms = [pfo.PositiveOrthant() * pfo.HomothetyOp(cst=2), self.lam * pfo.L1Norm()]

        x = self._run(f, terms, np.zeros(6), dict(nu=8, **{"lambda": 1}), 500)
        assert np.allclose(x, nonneg_lasso(self.y, self.lam), atol=1e-6)

    @pytest.mark.parametrize(
        ["lam", "x_gt"],
        [
            [0.2, np.r_[0.2, 0.8]],
            [1.0, np.r_[0.5, 0.5]],
        ],
    )
    def test_total_variation(self, lam, x_gt):
        # 2-sample TV denoising: gap shrinks by 2 * lam, or collapses to the mean.
        f = pfo.SquaredL2Loss(data=np.r_[0.0, 1.0])
        h = lam * pfo.L1Norm(1) * pfo.FiniteDifference(2)

        x = self._run(f, [None, h], np.zeros(2), dict(nu=4, **{"lambda": 1}), 2000)
        assert np.allclose(x, x_gt, atol=1e-6)

    def test_stacked_inputs(self, xp, width):
        # (..., N) inputs are solved independently.
        Y = np.stack([self.y, -self.y, 2 * self.y])
        f = pfo.SquaredL2Loss(data=xp.asarray(Y, dtype=width))
        terms = [self.lam * pfo.L1Norm(), pfo.PositiveOrthant()]

        x0 = xp.zeros(Y.shape, dtype=width)
        x = self._run(f, terms, x0, dict(nu=2, **{"lambda": 1}), 150)
        x_gt = nonneg_lasso(Y, self.lam)
        assert x.shape == Y.shape
        assert ct.allclose(x, x_gt, as_dtype=width)


class TestFBPD:
    y = np.r_[2.0, -1.0, 0.7, 3.5, -0.2]
    lam = 0.5

    def _solver(self, **kwargs):
        kwargs.setdefault("show_progress", False)
        return pfsl.FBPD(
            f=pfo.SquaredL2Loss(data=self.y),
            terms=(self.lam * pfo.L1Norm(), pfo.PositiveOrthant()),
            **kwargs,
        )

    @pytest.mark.parametrize("method", ["plain", "accelerated"])
    def test_block(self, method):
        slvr = self._solver()
        slvr.fit(x0=np.zeros(5), nu=2, method=method, lambda_=1, stop_crit=pfst.MaxIter(300))

        x = slvr.solution()
        assert np.allclose(x, nonneg_lasso(self.y, self.lam), atol=1e-6)
        assert slvr.solution("dual").shape == (5,)
        assert slvr.logfile.exists()

    @pytest.mark.parametrize("method", ["plain", "accelerated"])
    @pytest.mark.parametrize("abs_tol", [True, False])
    def test_default_stop_crit(self, method, abs_tol):
        slvr = self._solver()
        slvr.fit(x0=np.zeros(5), nu=2, method=method, lambda_=1, abs_tol=abs_tol)

        _, history = slvr.stats()
        assert len(history) > 3
        assert np.allclose(slvr.solution(), nonneg_lasso(self.y, self.lam), atol=1e-2)

    def test_manual(self):
        slvr = self._solver()
        slvr.fit(x0=np.zeros(5), nu=2, lambda_=1, mode=pfa.SolverMode.MANUAL, stop_crit=pfst.ManualStop())

        n = 0
        for data in slvr.steps(n=5):
            assert set(data.keys()) == {"x", "z"}
            n += 1
        assert n == 5

    def test_async(self):
        slvr = self._solver()
        slvr.fit(x0=np.zeros(5), nu=2, lambda_=1, mode=pfa.SolverMode.ASYNC, stop_crit=pfst.MaxIter(50))
        slvr.stop()
        assert slvr.solution().shape == (5,)

    def test_track_objective(self):
        # lasso without constraint: finite objective along the path
        slvr = pfsl.FBPD(
            f=pfo.SquaredL2Loss(data=self.y),
            terms=(self.lam * pfo.L1Norm(), None),
            show_progress=False,
        )
        slvr.fit(x0=np.zeros(5), nu=2, lambda_=1, stop_crit=pfst.MaxIter(200), track_objective=True)

        _, history = slvr.stats()
        x_gt = np.sign(self.y) * np.fmax(np.abs(self.y) - self.lam, 0)
        obj_gt = 0.5 * np.sum((x_gt - self.y) ** 2) + self.lam * np.sum(np.abs(x_gt))
        assert np.allclose(slvr.solution(), x_gt)
        assert np.isclose(history["Memorize[objective_func]"][-1], obj_gt)

    def test_missing_lambda_block(self):
        slvr = self._solver()
        with pytest.raises(pfe.ConfigurationError):
            slvr.fit(x0=np.zeros(5), stop_crit=pfst.MaxIter(10))
        assert "EXCEPTION RAISED" in slvr.logfile.read_text()

    def test_missing_lambda_manual(self):
        slvr = self._solver()
        slvr.fit(x0=np.zeros(5), mode=pfa.SolverMode.MANUAL, stop_crit=pfst.MaxIter(10))
        with pytest.raises(pfe.ConfigurationError):
            next(slvr.steps())

    def test_missing_lambda_async(self):
        slvr = self._solver()
        slvr.fit(x0=np.zeros(5), mode=pfa.SolverMode.ASYNC, stop_crit=pfst.MaxIter(10))
        with pytest.raises(pfe.ConfigurationError):
            slvr.stop()

    def test_init_error(self):
        slvr = pfsl.FBPD(f=None, terms=(None, None, None), show_progress=False)
        with pytest.raises(pfe.ConfigurationError):
            slvr.fit(x0=np.zeros(5), lambda_=1)
        with pytest.raises(ValueError):
            slvr.stop()  # no run in progress

    def test_writeback(self):
        slvr = self._solver(writeback_rate=0)
        slvr.fit(x0=np.zeros(5), nu=2, lambda_=1, stop_crit=pfst.MaxIter(20))

        data = pfu.load_zarr(slvr.datafile)
        assert {"x", "z", "history"} <= set(data.keys())
        assert np.allclose(data["x"], slvr.solution())
        assert data["history"].shape[0] == 21

    def test_periodic_writeback(self):
        slvr = self._solver(writeback_rate=5)
        slvr.fit(x0=np.zeros(5), nu=2, lambda_=1, stop_crit=pfst.MaxIter(20))

        data = pfu.load_zarr(slvr.datafile)
        assert np.allclose(data["x"], slvr.solution())
        assert data["history"].shape[0] == 21
        assert np.array_equal(data["history"][:, 0], np.arange(21))  # iteration column

    def test_alias(self):
        assert pfsl.FBPrimalDual is pfsl.FBPD
