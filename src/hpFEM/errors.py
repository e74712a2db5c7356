"""Exception hierarchy for hpFEM."""


class HpFemError(Exception):
    """Base class for all hpFEM errors."""


class FormatError(HpFemError, ValueError):
    """Mesh input could not be read or is inconsistent."""


class SolverError(HpFemError, RuntimeError):
    """Linear system is singular or the factorization failed."""


class SelectionExhausted(HpFemError):
    """No refinement candidate improves on the unrefined element."""

    def __init__(self, element_id: int, message: str | None = None):
        self.element_id = element_id
        super().__init__(
            message or f"No beneficial refinement candidate for element {element_id}"
        )
