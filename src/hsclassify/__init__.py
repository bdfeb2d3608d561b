"""hsclassify - GRI tariff classification with a hash-chained audit trail."""

__version__ = "0.1.0"

__all__ = ["__version__"]
