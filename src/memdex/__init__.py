"""memdex - local incremental semantic index for repository memory notes."""

__version__ = "0.1.0"
