"""NMDC hub client with peer file-list bootstrap."""

__version__ = "0.3.0"
