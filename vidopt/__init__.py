"""vidopt - video conversion queue orchestrator."""

__version__ = "0.1.0"
