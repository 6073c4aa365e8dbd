"""
📡 Monitors - Polling-based stream status monitoring

Interroge Helix pour les transitions live / offline.
"""
from .stream_monitor import StreamMonitor

__all__ = ["StreamMonitor"]
