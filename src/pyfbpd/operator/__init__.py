from .linop import (
    ExplicitLinOp as ExplicitLinOp,
    FiniteDifference as FiniteDifference,
    HomothetyOp as HomothetyOp,
    IdentityOp as IdentityOp,
)
from .func import (
    Box as Box,
    L1Norm as L1Norm,
    L2Norm as L2Norm,
    NullFunc as NullFunc,
    PositiveOrthant as PositiveOrthant,
    SquaredL2Loss as SquaredL2Loss,
)
