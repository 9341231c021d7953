"""
framecast - Live MJPEG Streaming Server

Captures JPEG frames from a video device and fans them out over HTTP to
any number of viewers as a multipart/x-mixed-replace stream.
"""

__version__ = "0.1.0"


class FramecastError(Exception):
    """Base class for errors that stop the pipeline from starting."""
    pass
