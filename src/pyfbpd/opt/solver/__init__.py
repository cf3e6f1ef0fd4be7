from .fbpd import (
    FBPD as FBPD,
    ConstantMomentum as ConstantMomentum,
    FBPrimalDual as FBPrimalDual,
    Method as Method,
    Momentum as Momentum,
    NesterovMomentum as NesterovMomentum,
    finalize as finalize,
    initialize as initialize,
    iterate as iterate,
    momentum as momentum,
    resolve_operator as resolve_operator,
    step_sizes as step_sizes,
)
