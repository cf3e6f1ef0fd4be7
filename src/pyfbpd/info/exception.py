# Custom exceptions used inside pyfbpd.

__all__ = [
    "PyfbpdError",
    "ConfigurationError",
]


class PyfbpdError(Exception):
    """
    Parent class of all exceptions raised in pyfbpd.
    """


class ConfigurationError(PyfbpdError, ValueError):
    """
    Use when an algorithm is set up (or invoked) with inconsistent parameters.

    These are caller errors: they are never retried and leave the algorithm instance unusable.
    """
