import pyfbpd.info.deps as pfd
import pyfbpd.info.ptype as pft

__all__ = [
    "copy_if_unsafe",
    "snapshot",
]


def copy_if_unsafe(x: pft.NDArray) -> pft.NDArray:
    """
    Copy an array if it cannot be safely modified in-place.

    An array is unsafe to modify if it does not own its memory (views, broadcasted arrays) or is read-only.  Dask arrays
    are immutable: in-place operators re-bind them, hence they are returned as-is.
    """
    ndi = pfd.NDArrayInfo.from_obj(x)
    if ndi == pfd.NDArrayInfo.DASK:
        return x

    flags = getattr(x, "flags", None)
    if (flags is None) or (not flags.owndata) or (not flags.writeable):
        return x.copy()
    return x


def snapshot(x: pft.NDArray) -> pft.NDArray:
    """
    Copy of `x` which is unaffected by later in-place updates of `x`.
    """
    ndi = pfd.NDArrayInfo.from_obj(x)
    if ndi == pfd.NDArrayInfo.DASK:
        return x  # immutable
    return x.copy()
