"""
Stream Relay
A live video relay that fans out a transcoder's TCP byte stream to any
number of viewers and announces the stream to a directory portal.
"""

__version__ = "0.3.0"
__author__ = "Stream Relay contributors"
__description__ = "Live transcoder fan-out relay with portal registration"
