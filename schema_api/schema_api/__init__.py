"""HTTP API for schema attribute impact analysis and change propagation."""

__version__ = "0.1.0"
