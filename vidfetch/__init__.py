"""
vidfetch: a bounded-concurrency video download service with a self-updating
yt-dlp binary.
"""

__version__ = "1.0.0"
