"""
YouTube - Registry des connexions live chat et driver multi-stream
"""
from youtube.connection_registry import ConnectionState, YouTubeConnectionRegistry
from youtube.platform import YouTubePlatform

__all__ = ["ConnectionState", "YouTubeConnectionRegistry", "YouTubePlatform"]
