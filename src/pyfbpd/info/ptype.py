import collections.abc as cabc
import numbers as nb
import pathlib as plib
import typing as typ

import numpy.typing as npt

import pyfbpd.info.deps as pfd

if typ.TYPE_CHECKING:
    import pyfbpd.abc.solver as pfs
    import pyfbpd.abc.term as pfterm

#: Supported dense array types.
NDArray = typ.TypeVar("NDArray", *pfd.supported_array_types())

#: Supported dense array modules.
ArrayModule = typ.TypeVar(
    "ArrayModule",
    *[typ.Literal[_] for _ in pfd.supported_array_modules()],
)

#: Linear operators and objective terms exposed to users.
OpT = typ.TypeVar(
    "OpT",
    "pfterm.LinOp",
    "pfterm.SmoothTerm",
    "pfterm.NonSmoothTerm",
)

#: Top-level abstract :py:class:`~pyfbpd.abc.Solver` interface exposed to users.
SolverT = typ.TypeVar("SolverT", bound="pfs.Solver")

#: :py:class:`~pyfbpd.abc.Solver` hierarchy class type.
SolverC = typ.Type[SolverT]

#: Solver run-modes.
SolverM = typ.TypeVar("SolverM", bound="pfs.SolverMode")

Integer = nb.Integral
Real = nb.Real  #: Alias of :py:class:`numbers.Real`.
DType = npt.DTypeLike  #: :py:attr:`~pyfbpd.info.ptype.NDArray` dtype specifier.
NDArrayShape = typ.Union[Integer, tuple[Integer, ...]]  #: :py:attr:`~pyfbpd.info.ptype.NDArray` shape specifier.
Path = typ.Union[str, plib.Path]  #: Path-like object.
VarName = typ.Union[str, cabc.Collection[str]]  #: Variable name(s).
