"""Download-and-transcode pipeline for YouTube videos and audio tracks."""

__version__ = "1.0.0"
