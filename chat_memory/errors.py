"""Error taxonomy for the memory engine."""


class MemoryEngineError(Exception):
    """Base class for all memory engine errors."""


class StorageUnavailable(MemoryEngineError):
    """The backing store could not be reached or a statement failed."""


class GenerationUnavailable(MemoryEngineError):
    """The text-generation collaborator failed or timed out."""


class InvalidSummary(MemoryEngineError):
    """Generated text failed summary validation.

    Attributes:
        check: Name of the validation check that rejected the text.
    """

    def __init__(self, check: str, text: str = "") -> None:
        self.check = check
        self.text = text
        super().__init__(f"Summary rejected by check '{check}'")
