"""CodeScout - local semantic code search for a single workspace."""

__version__ = "0.3.0"
