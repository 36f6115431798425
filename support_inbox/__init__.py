"""WhatsApp support inbox with an AI co-pilot."""

from .__version__ import __version__

__all__ = ["__version__"]
