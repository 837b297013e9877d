"""Custom exceptions for the Aves learning engine."""


class AvesError(Exception):
    """Base exception for the Aves learning engine."""

    pass


class TransientExternalError(AvesError):
    """Raised when the vision-assessment call fails or times out.

    Callers retry with backoff up to a bounded number of attempts, then
    mark the item unassessed.
    """

    pass


class ValidationError(AvesError):
    """Raised when input validation fails (bad action, unknown feature/species)."""

    pass


class InvalidTransitionError(ValidationError):
    """Raised when a review state change is not allowed."""

    pass


class PersistenceError(AvesError):
    """Raised when a pattern store write fails.

    Never swallowed: a dropped write corrupts the learning signal.
    """

    pass


class InsufficientDataError(AvesError):
    """Raised when a pattern has fewer samples than the minimum threshold."""

    def __init__(self, feature_name: str, species_id: str, sample_count: int, required: int):
        self.feature_name = feature_name
        self.species_id = species_id
        self.sample_count = sample_count
        self.required = required
        super().__init__(
            f"Insufficient data for {species_id}:{feature_name} "
            f"({sample_count}/{required} samples)"
        )
