"""encore: resilience core for the music-chat backend's outbound calls."""

__version__ = "0.1.0"
