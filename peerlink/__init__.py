"""peerlink: real-time presence and call signaling relay."""

__version__ = "0.1.0"
