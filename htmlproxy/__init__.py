"""Browser-backed fetch service returning fully rendered HTML."""

__version__ = "0.1.0"
