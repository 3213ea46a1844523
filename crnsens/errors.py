"""
Exceptions raised while compiling and simulating reaction networks.

Compile-time errors ([`ValidationError`][crnsens.errors.ValidationError],
[`UnsupportedFeature`][crnsens.errors.UnsupportedFeature],
[`CyclicRuleDependency`][crnsens.errors.CyclicRuleDependency]) abort compilation of a model.
[`IntegrationFailure`][crnsens.errors.IntegrationFailure] is raised for a single experiment;
[`simulate`][crnsens.simulate.simulate] isolates it so sibling experiments still run.
"""


class CrnSensError(Exception):
    """Base class of every error raised by this package."""


class ValidationError(CrnSensError, ValueError):
    """
    The network is malformed: an unresolved species/parameter reference, a duplicate name,
    a rule without exactly one ``=``, or an expression that cannot be parsed.
    """


class UnsupportedFeature(CrnSensError, NotImplementedError):
    """
    The network or request uses something that is deliberately not supported,
    e.g., a rule kind other than repeated/initial assignment, or a derivative order above 3.
    """


class CyclicRuleDependency(CrnSensError):
    """
    Substituting the assignment rules into the rate laws did not reach a fixed point
    within as many passes as there are rules.
    """

    def __init__(self, message: str, remaining: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.remaining = remaining
        """names of the rule targets still present in some rate law"""


class ShapeMismatch(CrnSensError, ValueError):
    """
    A joint solution vector has a length that does not correspond to any whole number
    of active parameters.
    """


class IntegrationFailure(CrnSensError):
    """
    The ODE solver failed to converge or its step size collapsed.
    """

    def __init__(self, message: str, t_last: float) -> None:
        super().__init__(f"{message} (last successful time: {t_last})")
        self.t_last = t_last
        """last time successfully reached by the solver"""
