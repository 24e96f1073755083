"""Self-hosted agent that executes UI step scripts for a remote coordinator."""

from execution_agent.logging_config import configure_logging

configure_logging()

__version__ = "0.4.0"

__all__ = ["configure_logging", "__version__"]
