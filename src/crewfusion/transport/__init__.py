"""Model API transports."""

from .gemini import GeminiAPIError, GeminiTransport

__all__ = ["GeminiAPIError", "GeminiTransport"]
