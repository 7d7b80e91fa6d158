"""AI-assisted mutation pipeline for a visual website builder."""

__version__ = "0.4.0"
