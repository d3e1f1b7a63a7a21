"""Real-time chat queue and session routing for the Pendo platform."""

from .__version__ import __version__

__all__ = ["__version__"]
