"""Storage providers and a download task for reading remote streams while they download."""

__version__ = "0.1.0"