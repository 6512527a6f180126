"""Exception hierarchy for regularized classifier selection."""


class SelectorError(Exception):
    """Base class for errors raised by drug_response_ml."""


class InvalidInput(SelectorError, ValueError):
    """Shapes, cardinalities or configuration violate a precondition.

    Raised before any cross-validation work starts.
    """


class NumericalFailure(SelectorError, RuntimeError):
    """A penalised logistic fit did not converge (or produced non-finite
    coefficients).

    Inside cross-validation this is recovered per (fold, lambda) cell. It
    only reaches the caller when the final refit cannot be completed.
    """

    def __init__(self, message: str, lam: float = float("nan")) -> None:
        super().__init__(message)
        self.lam = lam


class UnreliableSelection(SelectorError, RuntimeError):
    """No lambda in the grid has enough valid folds to be selected."""
