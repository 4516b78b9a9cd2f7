"""Local mirror synchronization core for rate-limited, OAuth-guarded item providers."""

__version__ = "0.1.0"
