"""Peer scheduling, pruning and peer-metadata tools for a libp2p network crawler."""

__version__ = "0.1.0"