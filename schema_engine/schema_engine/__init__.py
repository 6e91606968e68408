"""Schema attribute change impact analysis and rule propagation engine."""

__version__ = "0.1.0"
