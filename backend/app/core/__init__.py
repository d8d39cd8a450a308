"""Core utilities for the Banter backend."""

from .cipher import MessageCipher, get_cipher

__all__ = ["MessageCipher", "get_cipher"]
