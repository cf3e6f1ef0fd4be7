import collections.abc as cabc
import datetime as dt
import enum
import logging
import operator
import pathlib as plib
import shutil
import sys
import tempfile
import threading
import typing as typ

import numpy as np
import numpy.lib.recfunctions as rfn

import pyfbpd.info.ptype as pft
import pyfbpd.util as pfu

__all__ = [
    "SolverMode",
    "Solver",
    "StoppingCriterion",
]


@enum.unique
class SolverMode(enum.Enum):
    """
    How :py:meth:`~pyfbpd.abc.Solver.fit` runs iterations.

    * BLOCK: ``fit()`` returns once the stopping criterion fired.
    * MANUAL: iterations are pulled by the caller through :py:meth:`~pyfbpd.abc.Solver.steps`.
    * ASYNC: iterations run in a background thread until :py:meth:`~pyfbpd.abc.Solver.stop` is called.
    """

    BLOCK = enum.auto()
    MANUAL = enum.auto()
    ASYNC = enum.auto()


class StoppingCriterion:
    """
    Decide when an iterative solver should stop by inspecting its math state.

    Sub-classes implement :py:meth:`~pyfbpd.abc.StoppingCriterion.stop` and
    :py:meth:`~pyfbpd.abc.StoppingCriterion.info`, and :py:meth:`~pyfbpd.abc.StoppingCriterion.clear` if they buffer
    past states.  Criteria combine with ``&`` and ``|``.
    """

    def stop(self, state: cabc.Mapping[str]) -> bool:
        """
        Parameters
        ----------
        state: ~collections.abc.Mapping
            Math state of the solver, i.e. :py:attr:`~pyfbpd.abc.Solver._mstate`.

        Returns
        -------
        s: bool
            True if iterations should end.
        """
        raise NotImplementedError

    def info(self) -> cabc.Mapping[str, float]:
        """
        Statistics computed by the last :py:meth:`~pyfbpd.abc.StoppingCriterion.stop` call, keyed by label.
        """
        raise NotImplementedError

    def clear(self):
        """
        Forget buffered state so the criterion can drive a new run.
        """
        pass

    def __or__(self, other: "StoppingCriterion") -> "StoppingCriterion":
        return _StoppingCriteriaComposition(lhs=self, rhs=other, op=operator.or_)

    def __and__(self, other: "StoppingCriterion") -> "StoppingCriterion":
        return _StoppingCriteriaComposition(lhs=self, rhs=other, op=operator.and_)


class _StoppingCriteriaComposition(StoppingCriterion):
    def __init__(
        self,
        lhs: StoppingCriterion,
        rhs: StoppingCriterion,
        op: cabc.Callable[[bool, bool], bool],
    ):
        self._lhs = lhs
        self._rhs = rhs
        self._op = op

    def stop(self, state: cabc.Mapping) -> bool:
        # both sides always evaluated: info() reports both.
        return self._op(self._lhs.stop(state), self._rhs.stop(state))

    def info(self) -> cabc.Mapping[str, float]:
        return {**self._lhs.info(), **self._rhs.info()}

    def clear(self):
        self._lhs.clear()
        self._rhs.clear()


def _timestamp() -> str:
    return f"[{dt.datetime.now()}]"


class Solver:
    r"""
    Iteration driver shared by minimization algorithms.

    Sub-classes provide the mathematics through :py:meth:`~pyfbpd.abc.Solver.m_init` and
    :py:meth:`~pyfbpd.abc.Solver.m_step`, and optionally :py:meth:`~pyfbpd.abc.Solver.default_stop_crit` and
    :py:meth:`~pyfbpd.abc.Solver.objective_func`.  Both math methods only touch
    :py:attr:`~pyfbpd.abc.Solver._mstate`.

    The driver runs iterations in one of the :py:class:`~pyfbpd.abc.SolverMode` modes, evaluates the stopping
    criterion every `stop_rate` iterations, logs its statistics to :py:attr:`~pyfbpd.abc.Solver.logfile` and
    optionally checkpoints logged variables to :py:attr:`~pyfbpd.abc.Solver.datafile`.  Errors raised by the
    algorithm are logged, then propagated to the caller.

    Examples
    --------
    .. code-block:: python3

       slvr.fit(x0=x0, mode=SolverMode.MANUAL)
       for data in slvr.steps(n=10):
           print(data["x"])

       slvr.fit(x0=x0, mode=SolverMode.ASYNC)
       while slvr.busy():
           ...
       slvr.stop()
       data, history = slvr.stats()
    """

    _mstate: dict[str, typ.Any]  #: Mathematical state.
    _astate: dict[str, typ.Any]  #: Book-keeping (non-math) state.

    def __init__(
        self,
        *,
        folder: pft.Path = None,
        exist_ok: bool = False,
        stop_rate: pft.Integer = 1,
        writeback_rate: pft.Integer = None,
        verbosity: pft.Integer = None,
        show_progress: bool = True,
        log_var: pft.VarName = frozenset(),
    ):
        """
        Parameters
        ----------
        folder: Path
            Directory holding the logfile and checkpoints.  (Default: fresh temporary directory.)
        exist_ok: bool
            Allow `folder` to exist already.  Its content is wiped.
        stop_rate: Integer
            Evaluate the stopping criterion every `stop_rate` iterations.
        writeback_rate: Integer
            None (default): no checkpoints.  0: checkpoint the final state only.  Otherwise checkpoint every
            `writeback_rate` iterations, and at the end.  Must be a multiple of `stop_rate`.
        verbosity: Integer
            Log stopping-criterion statistics every `verbosity` iterations.  Must be a multiple of `stop_rate`.
            (Default: `stop_rate`.)
        show_progress: bool
            Also print statistics to stdout in BLOCK mode.
        log_var: VarName
            Math-state entries exposed by :py:meth:`~pyfbpd.abc.Solver.stats` and checkpoints.
        """
        self._mstate = dict()
        self._astate = dict(
            workdir=self._prepare_folder(folder, exist_ok),
            stop_rate=None,
            wb_rate=None,
            log_rate=None,
            stdout=bool(show_progress),
            log_var=None,
            # per-run state, reset by fit()
            history=None,
            idx=0,
            logger=None,
            stop_crit=None,
            track_objective=None,
            mode=None,
            active=None,
            worker=None,
            error=None,  # exception raised in the worker thread
        )
        ast = self._astate  # shorthand

        try:
            assert stop_rate >= 1
            ast["stop_rate"] = int(stop_rate)
        except Exception:
            raise ValueError(f"stop_rate: expected positive integer, got {stop_rate}.")

        try:
            if writeback_rate not in (None, 0):
                assert writeback_rate > 0
                assert writeback_rate % ast["stop_rate"] == 0
                writeback_rate = int(writeback_rate)
            ast["wb_rate"] = writeback_rate
        except Exception:
            raise ValueError(f"writeback_rate: expected None, 0 or a multiple of stop_rate, got {writeback_rate}.")

        try:
            verbosity = ast["stop_rate"] if (verbosity is None) else verbosity
            assert verbosity % ast["stop_rate"] == 0
            ast["log_rate"] = int(verbosity)
        except Exception:
            raise ValueError(f"verbosity: expected a multiple of stop_rate={stop_rate}, got {verbosity}.")

        try:
            ast["log_var"] = frozenset((log_var,) if isinstance(log_var, str) else log_var)
        except Exception:
            raise ValueError(f"log_var: expected collection of names, got {type(log_var)}.")

    @staticmethod
    def _prepare_folder(folder: pft.Path, exist_ok: bool) -> plib.Path:
        if folder is None:
            return plib.Path(tempfile.mkdtemp(prefix="pyfbpd_"))

        try:
            folder = plib.Path(folder).expanduser().resolve()
        except Exception:
            raise ValueError(f"folder: expected path-like, got {type(folder)}.")
        if folder.exists() and (not exist_ok):
            raise FileExistsError(f"{folder} already exists.")
        shutil.rmtree(folder, ignore_errors=True)
        folder.mkdir(parents=True)
        return folder

    # Public API --------------------------------------------------------------

    def fit(self, **kwargs):
        r"""
        Solve the problem.

        Parameters
        ----------
        \*\*kwargs
            Forwarded to :py:meth:`~pyfbpd.abc.Solver.m_init`, except for the entries below.
        stop_crit: StoppingCriterion
            (Default: :py:meth:`~pyfbpd.abc.Solver.default_stop_crit`.)
        mode: SolverMode
            (Default: BLOCK.)
        track_objective: bool
            Store the objective value in the math state at every stopping-criterion evaluation, and record it in the
            history.  (Default: False.)
        """
        mode = kwargs.pop("mode", SolverMode.BLOCK)
        self._mstate.clear()
        self._astate.update(
            history=[],
            idx=0,
            logger=self._open_logger(stdout=(mode is SolverMode.BLOCK) and self._astate["stdout"]),
            stop_crit=kwargs.pop("stop_crit", None),
            track_objective=kwargs.pop("track_objective", False),
            mode=mode,
            active=None,
            worker=None,
            error=None,
        )

        try:
            self.m_init(**kwargs)
            self._astate["stop_crit"] = self._build_stop_crit()
        except Exception as e:
            self._astate["logger"].exception(f"{_timestamp()} Initialization failed -> ABORT", exc_info=e)
            self._close_run()
            raise
        self._m_persist()

        if mode is not SolverMode.MANUAL:
            self._astate.update(
                active=threading.Event(),
                worker=Solver._Worker(self),
            )
            self._astate["active"].set()
            self._astate["worker"].start()
            if mode is SolverMode.BLOCK:
                self._astate["worker"].join()
                self.stop()

    def m_init(self, **kwargs):
        """
        Set the initial math state from the parameters given to :py:meth:`~pyfbpd.abc.Solver.fit`.
        """
        raise NotImplementedError

    def m_step(self):
        """
        Perform one iteration on the math state.
        """
        raise NotImplementedError

    def default_stop_crit(self) -> StoppingCriterion:
        """
        Stopping criterion used when :py:meth:`~pyfbpd.abc.Solver.fit` receives none.

        Called after :py:meth:`~pyfbpd.abc.Solver.m_init`.
        """
        raise NotImplementedError("No default stopping criterion defined.")

    def objective_func(self) -> pft.NDArray:
        """
        Objective value(s) at the current iterate, with shape (..., 1).
        """
        raise NotImplementedError("No objective function defined.")

    def solution(self):
        """
        Solution of the problem.  Sub-class dependent.
        """
        raise NotImplementedError

    def steps(self, n: pft.Integer = None) -> cabc.Generator:
        """
        Iterate and yield the logged variables after each iteration.  (MANUAL mode only.)

        Parameters
        ----------
        n: Integer
            Maximum number of iterations to run.  (Default: until the stopping criterion fires.)
        """
        self._check_mode(SolverMode.MANUAL)
        done = 0
        while (n is None) or (done < n):
            try:
                proceed = self._step()
            except Exception:
                self._close_run()
                raise
            if not proceed:
                self._close_run()
                return
            data, _ = self.stats()
            yield data
            done += 1

    def busy(self) -> bool:
        """
        True while background iterations are running.  (ASYNC mode only.)
        """
        self._check_mode(SolverMode.ASYNC, SolverMode.BLOCK)
        return self._astate["active"].is_set()

    def stop(self):
        """
        Stop background iterations and wait for them to end.  (ASYNC mode only.)

        Must be called once per ASYNC run.  Re-raises the error which ended the iterations, if any.
        """
        self._check_mode(SolverMode.ASYNC, SolverMode.BLOCK)
        self._astate["active"].clear()
        self._astate["worker"].join()
        error = self._astate["error"]
        self._close_run()
        if error is not None:
            raise error

    def stats(self) -> tuple[dict, typ.Optional[np.ndarray]]:
        """
        Returns
        -------
        data: dict
            Current values of the ``log_var`` entries.  (None if unknown.)
        history: numpy.ndarray, None
            (N_check,) structured array of stopping-criterion statistics, one record per evaluation.  Field
            "iteration" holds the iteration index.
        """
        hist = self._astate["history"]
        hist = np.concatenate(hist, axis=0) if hist else None
        data = {k: self._mstate.get(k) for k in self._astate["log_var"]}
        return data, hist

    def writeback(self):
        """
        Checkpoint the logged variables and the history to :py:attr:`~pyfbpd.abc.Solver.datafile`.

        The history is stored as a plain (N_check, N_field) float array, columns ordered as its fields.
        """
        data, hist = self.stats()
        if hist is not None:
            hist = rfn.structured_to_unstructured(hist, dtype=np.float64)
        pfu.save_zarr(self.datafile, {"history": hist, **data})

    @property
    def workdir(self) -> pft.Path:
        """Directory holding instance data."""
        return self._astate["workdir"]

    @property
    def logfile(self) -> pft.Path:
        """Log of stopping-criterion statistics and errors."""
        return self.workdir / "solver.log"

    @property
    def datafile(self) -> pft.Path:
        """Checkpoint directory."""
        return self.workdir / "data.zarr"

    # Internals ---------------------------------------------------------------

    def _open_logger(self, stdout: bool) -> logging.Logger:
        logger = logging.getLogger(str(self.workdir))
        logger.handlers.clear()
        logger.setLevel(logging.DEBUG)
        logger.propagate = False

        handlers = [logging.FileHandler(self.logfile, mode="w")]
        if stdout:
            handlers.append(logging.StreamHandler(sys.stdout))
        fmt = logging.Formatter(fmt="{levelname} -- {message}", style="{")
        for h in handlers:
            h.setFormatter(fmt)
            logger.addHandler(h)
        return logger

    def _close_run(self):
        logger = self._astate["logger"]
        if logger is not None:
            for h in logger.handlers:
                h.close()
        self._astate.update(
            mode=None,  # run methods become illegal until the next fit()
            active=None,
            worker=None,
            error=None,
        )

    def _build_stop_crit(self) -> StoppingCriterion:
        stop_crit = self._astate["stop_crit"]
        if stop_crit is None:
            stop_crit = self.default_stop_crit()
        stop_crit.clear()
        if self._astate["track_objective"]:
            from pyfbpd.opt.stop import Memorize

            stop_crit |= Memorize(var="objective_func")
        return stop_crit

    def _check_mode(self, *modes: SolverMode):
        m = self._astate["mode"]
        if m is None:
            raise ValueError("Illegal method call: invoke Solver.fit() first.")
        elif m not in modes:
            allowed = ", ".join(_.name for _ in modes)
            raise ValueError(f"Illegal method call: only valid for Solver.fit(mode=Any[{allowed}]).")

    def _record(self):
        # Append stopping-criterion statistics to the history.
        ast = self._astate
        info = ast["stop_crit"].info() or dict(dummy=0.0)
        dtype = [("iteration", np.int64)] + [(k, np.float64) for k in info]
        rec = np.array([(ast["idx"], *map(float, info.values()))], dtype=dtype)
        ast["history"].append(rec)

    def _report(self):
        rec = self._astate["history"][-1][0]
        lines = [f"{_timestamp()} Iteration {self._astate['idx']:>_d}"]
        lines += [f"\t{k}: {v}" for (k, v) in zip(rec.dtype.names, rec)]
        self._astate["logger"].info("\n".join(lines))

    def _step(self) -> bool:
        # One driver tick.  Returns False once the stopping criterion fired.
        ast = self._astate
        idx = ast["idx"]
        checking = idx % ast["stop_rate"] == 0
        periodic_wb = ast["wb_rate"] not in (None, 0)

        try:
            if checking and ast["track_objective"]:
                self._mstate["objective_func"] = self.objective_func().reshape(-1)

            if checking and ast["stop_crit"].stop(self._mstate):
                self._record()
                self._report()
                ast["logger"].info(f"{_timestamp()} Stopping Criterion satisfied -> END")
                if ast["wb_rate"] is not None:
                    self.writeback()
                return False

            if checking:
                self._record()
            if idx % ast["log_rate"] == 0:
                self._report()
            if periodic_wb and (idx % ast["wb_rate"] == 0):
                self.writeback()

            ast["idx"] += 1
            self.m_step()
            if checking:
                self._m_persist()
            return True
        except Exception as e:
            msg = f"{_timestamp()} Something went wrong at iteration {ast['idx']} -> EXCEPTION RAISED"
            if periodic_wb:
                msg += f"\nLast valid checkpoint done at iteration={idx - idx % ast['wb_rate']}."
            ast["logger"].exception(msg, exc_info=e)
            raise

    def _m_persist(self):
        # Materialize Dask entries of the math state.
        if self._mstate:
            k, v = zip(*self._mstate.items())
            v = pfu.compute(*v, mode="persist", traverse=False)
            self._mstate.update(zip(k, (v,) if (len(k) == 1) else v))

    class _Worker(threading.Thread):
        def __init__(self, solver: "Solver"):
            super().__init__(daemon=True)
            self.slvr = solver

        def run(self):
            try:
                while self.slvr._astate["active"].is_set() and self.slvr._step():
                    pass
            except Exception as e:
                self.slvr._astate["error"] = e  # re-raised by Solver.stop()
            finally:
                self.slvr._astate["active"].clear()
