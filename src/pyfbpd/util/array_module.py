import dask

import pyfbpd.info.deps as pfd
import pyfbpd.info.ptype as pft

__all__ = [
    "compute",
    "get_array_module",
    "to_NUMPY",
]


def get_array_module(x, fallback: pft.ArrayModule = None) -> pft.ArrayModule:
    """
    Array namespace (numpy, dask.array, cupy) to use to manipulate `x`.

    Parameters
    ----------
    x: object
        Array of a supported backend.
    fallback: ArrayModule
        Namespace returned if `x` is not an array of a supported backend.  An error is raised if omitted.
    """
    try:
        return pfd.NDArrayInfo.from_obj(x).module()
    except ValueError:
        if fallback is None:
            raise ValueError(f"Could not infer array module for {type(x)}.")
        return fallback


_EVAL = dict(
    compute=dask.compute,
    persist=dask.persist,
)


def compute(*args, mode: str = "compute", **kwargs):
    r"""
    Evaluate Dask collections found in `args`.

    Parameters
    ----------
    \*args: object
        Any objects.  Non-Dask objects are returned unchanged.
    mode: str
        "compute" (to in-memory results) or "persist" (to Dask collections with materialized chunks).
    \*\*kwargs: dict
        Forwarded to :py:func:`dask.compute` or :py:func:`dask.persist`, e.g. ``traverse=False``.

    Returns
    -------
    \*cargs: object
        Evaluated objects.  A single input is returned unwrapped.
    """
    try:
        func = _EVAL[mode.strip().lower()]
    except Exception:
        raise ValueError(f"mode: expected one of {list(_EVAL)}, got {mode}.")

    cargs = func(*args, **kwargs)
    return cargs[0] if (len(args) == 1) else cargs


def to_NUMPY(x: pft.NDArray) -> pft.NDArray:
    """
    Move an array of any supported backend to host memory.  (No-op on NumPy inputs.)
    """
    N = pfd.NDArrayInfo
    ndi = N.from_obj(x)
    if ndi is N.DASK:
        return to_NUMPY(compute(x))  # chunks may be CuPy arrays
    elif ndi is N.CUPY:
        return x.get()
    return x
