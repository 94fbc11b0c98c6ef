"""Settlement engine for fractional bullion holdings."""

__version__ = "0.1.0"
