from .array_module import (
    compute as compute,
    get_array_module as get_array_module,
    to_NUMPY as to_NUMPY,
)
from .io import (
    load_zarr as load_zarr,
    save_zarr as save_zarr,
)
from .misc import (
    copy_if_unsafe as copy_if_unsafe,
    snapshot as snapshot,
)
