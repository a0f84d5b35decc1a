"""Exceptions raised by the treadmill driver."""


class PadCtrlError(Exception):
    """Base class for all padctrl errors."""


class TransportError(PadCtrlError):
    """The BLE transport failed to connect, discover, read or write."""


class ProtocolNegotiationError(PadCtrlError):
    """No known protocol was found after full service discovery."""


class ConnectionTimeoutError(PadCtrlError):
    """The device did not become ready, even after the automatic retry."""
