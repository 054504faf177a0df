"""Errors raised by the droplet-processing functions."""


class DropletError(Exception):
    """Base class for every error raised by pydroplets."""
    pass


class InvalidParameters(DropletError, ValueError):
    """Raised when a threshold, iteration count or other argument is out of range."""
    pass


class InsufficientAmbientData(DropletError):
    """Raised when too few barcodes qualify for the ambient profile."""
    pass


class DegenerateAmbientModel(DropletError):
    """Raised when the ambient-defining subset is empty or carries no counts."""
    pass


class InsufficientRankPoints(DropletError, ValueError):
    """Raised when the barcode-rank curve has too few unique points."""
    pass


class EmptyInput(DropletError, ValueError):
    """Raised when a function receives no barcodes to work on."""
    pass


class DegenerateTag(DropletError):
    """Raised when a hashing tag has no variation across cells."""

    def __init__(self, tag, message=None):
        self.tag = tag
        super().__init__(message or f"Tag '{tag}' has zero variance across all cells")
