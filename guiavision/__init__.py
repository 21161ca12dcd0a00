"""GuiaVision live assistant: realtime camera + microphone session with spoken replies."""

__version__ = "0.1.0"
