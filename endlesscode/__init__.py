"""EndlessCode server: Claude CLI session supervision over WebSocket."""

__version__ = "0.1.0"
