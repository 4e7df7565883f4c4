"""Exception types raised by relaxedel."""


class ConfigurationError(ValueError):
    """Invalid setup: negative relaxation, empty data or mismatched dimensions.

    Raised before any optimization starts and fatal to the call that raised it.
    """


class NumericalFault(ArithmeticError):
    """Moment evaluation produced overflow or non-finite values.

    The inner loop reports these as an infeasible point (``+inf``) so the outer
    search can step away from them.
    """
