import types
import typing as typ

import numpy as np
import pytest

import pyfbpd.info.deps as pfd
import pyfbpd.info.ptype as pft
import pyfbpd.util as pfu

# Absolute tolerance per floating-point precision.
#   \sum_{k >= (p+1)//2} 2^{-k}, p=<number of mantissa bits>, rounded up to 3 significant digits.
_ATOL = {
    np.dtype(np.single): 2e-4,
    np.dtype(np.double): 1e-8,
}


@pytest.fixture(params=pfd.supported_array_modules())
def xp(request) -> types.ModuleType:
    return request.param


@pytest.fixture(params=list(_ATOL))
def width(request) -> np.dtype:
    return request.param


def _host(a) -> np.ndarray:
    if isinstance(a, pfd.supported_array_types()):
        return pfu.to_NUMPY(a)
    return np.asarray(a)


def isclose(
    a: typ.Union[pft.Real, pft.NDArray],
    b: typ.Union[pft.Real, pft.NDArray],
    as_dtype: pft.DType,
) -> np.ndarray:
    """
    Equivalent of `xp.isclose`, but where atol is automatically chosen based on `as_dtype`.

    Scalars and array-likes are accepted.  This function always returns a computed NumPy array.
    """
    prec = _ATOL.get(np.dtype(as_dtype), 1e-8)
    eq = np.isclose(_host(a), _host(b), atol=prec)
    return eq


def allclose(
    a: typ.Union[pft.Real, pft.NDArray],
    b: typ.Union[pft.Real, pft.NDArray],
    as_dtype: pft.DType,
) -> bool:
    """
    Equivalent of `all(isclose)`, but where atol is automatically chosen based on `as_dtype`.
    """
    return bool(np.all(isclose(a, b, as_dtype)))
