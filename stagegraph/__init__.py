"""stagegraph: declarative pipeline compiler."""

__version__ = "1.0.0"
