from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid session parameters or an address that cannot be resolved."""


class TransportError(OSError):
    """A socket could not be created or bound."""


class ProtocolError(RuntimeError):
    """The connection engine refused a write region inside the test window."""
