"""
Relay error taxonomy.

RelayCancelled is a normal shutdown trigger, not a failure; callers catch it
before RelayError so it is never reported as one.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class RelayCancelled(RelayError):
    """The stop signal was received."""


class ListenerError(RelayError):
    """Listen socket could not be set up."""


class TranscoderError(RelayError):
    """Transcoder process could not be spawned."""


class UpstreamError(RelayError):
    """Connecting to or reading from the transcoder failed."""


class UpstreamClosed(UpstreamError):
    """Transcoder closed its output before a full chunk was read."""


class DirectoryError(RelayError):
    """A directory portal call failed."""
