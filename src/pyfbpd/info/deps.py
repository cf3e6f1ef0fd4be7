import collections.abc as cabc
import enum
import importlib.util
import types

import dask.array as da
import numpy as np

__all__ = [
    "CUPY_ENABLED",
    "NDArrayInfo",
    "supported_array_types",
    "supported_array_modules",
]


def _load_cupy() -> types.ModuleType:
    # CuPy is only usable if a device is reachable.
    if importlib.util.find_spec("cupy") is None:
        return None
    try:
        import cupy

        return cupy if cupy.is_available() else None
    except Exception:
        return None


_cupy = _load_cupy()

#: Show if CuPy-based backends are available.
CUPY_ENABLED: bool = _cupy is not None


@enum.unique
class NDArrayInfo(enum.Enum):
    """
    Dense array backends FBPD iterates can live on.
    """

    NUMPY = "numpy"
    DASK = "dask.array"
    CUPY = "cupy"

    def module(self) -> types.ModuleType:
        """Array namespace of the backend.  (None if not installed.)"""
        return _BACKEND[self][0]

    def type(self) -> type:
        """Array type of the backend.  (None if not installed.)"""
        return _BACKEND[self][1]

    @classmethod
    def available(cls) -> tuple["NDArrayInfo", ...]:
        return tuple(ndi for ndi in cls if ndi.module() is not None)

    @classmethod
    def from_obj(cls, obj) -> "NDArrayInfo":
        """Find array backend associated to `obj`."""
        for ndi in cls.available():
            if isinstance(obj, ndi.type()):
                return ndi
        raise ValueError(f"No known array type to match {obj}.")


_BACKEND = {
    NDArrayInfo.NUMPY: (np, np.ndarray),
    NDArrayInfo.DASK: (da, da.Array),
    NDArrayInfo.CUPY: (_cupy, getattr(_cupy, "ndarray", None)),
}


def supported_array_types() -> cabc.Collection[type]:
    """Array types usable with the current install."""
    return tuple(ndi.type() for ndi in NDArrayInfo.available())


def supported_array_modules() -> cabc.Collection[types.ModuleType]:
    """Array namespaces usable with the current install."""
    return tuple(ndi.module() for ndi in NDArrayInfo.available())
