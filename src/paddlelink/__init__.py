"""paddlelink - phone controllers for a browser game over WebRTC."""

__version__ = "0.1.0"
