import os
import pathlib as plib
import shutil

import dask.array as da
import zarr

import pyfbpd.info.deps as pfd
import pyfbpd.info.ptype as pft
import pyfbpd.util.array_module as pfam

__all__ = [
    "save_zarr",
    "load_zarr",
]


def save_zarr(filedir: pft.Path, kw_in: dict[str, pft.NDArray]) -> None:
    """
    Save arrays to Zarr stores inside `filedir`.

    Dask arrays are stored with a filename prefix "dask_" so that :py:func:`~pyfbpd.util.load_zarr` restores them as
    Dask arrays.  ``None`` values are skipped.

    Parameters
    ----------
    filedir : Path
        The directory path where the stores will be written.
    kw_in : dict[str, NDArray]
        A dictionary where keys are the store names and values are the arrays to be saved.
    """
    filedir = plib.Path(filedir)
    filedir.mkdir(parents=True, exist_ok=True)
    for filename, array in kw_in.items():
        if array is None:
            continue
        ndi = pfd.NDArrayInfo.from_obj(array)
        if ndi == pfd.NDArrayInfo.DASK:
            array.to_zarr(
                str(filedir / ("dask_" + filename)),
                overwrite=True,
                compute=True,
            )
        else:
            target = filedir / filename
            shutil.rmtree(target, ignore_errors=True)  # zarr.save() does not overwrite existing stores.
            zarr.save(str(target), pfam.to_NUMPY(array))


def load_zarr(filepath: pft.Path) -> dict[str, pft.NDArray]:
    """
    Load arrays from Zarr stores within a directory written by :py:func:`~pyfbpd.util.save_zarr`.

    Parameters
    ----------
    filepath : Path
        The directory path from where the Zarr stores will be loaded.

    Returns
    -------
    kw_out : dict[str, NDArray]
        A dictionary where keys are the store names (with "dask_" prefix removed if present) and values are the loaded
        arrays.
    """
    filepath = plib.Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"The directory {filepath} does not exist.")

    if not filepath.is_dir():
        raise NotADirectoryError(f"{filepath} is not a directory.")

    kw_out = {}
    for file in os.listdir(filepath):
        if file.startswith("dask_"):
            kw_out[file.replace("dask_", "", 1)] = da.from_zarr(str(filepath / file))
        else:
            kw_out[file] = zarr.load(str(filepath / file))
    return kw_out
