from .solver import (
    Solver as Solver,
    SolverMode as SolverMode,
    StoppingCriterion as StoppingCriterion,
)
from .term import (
    LinOp as LinOp,
    NonSmoothTerm as NonSmoothTerm,
    SmoothTerm as SmoothTerm,
)
