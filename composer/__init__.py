"""Person + product photo compositing service backed by Gemini."""

__version__ = "1.0.0"
