"""grveyard marketplace backend: real-time direct messaging."""

__version__ = "0.1.0"
