from __future__ import annotations


class UsbtinError(Exception):
    pass


class ConnectError(UsbtinError):
    pass


class DeviceTimeoutError(UsbtinError):
    pass


class DeviceRejectedError(UsbtinError):
    """The device answered a command with BELL."""


class DeviceIOError(UsbtinError):
    pass


class InvalidFrameError(UsbtinError, ValueError):
    pass


class InvalidStateError(UsbtinError):
    pass


class LinkBrokenError(UsbtinError):
    """A queued frame was NAKed more often than the configured bound."""


class FilterError(UsbtinError):
    pass


class TooManyFilterChainsError(FilterError):
    pass


class FilterChainTooLongError(FilterError):
    pass
