"""
TikTok - Driver WebCast
"""
from tiktok.platform import TikTokPlatform

__all__ = ["TikTokPlatform"]
