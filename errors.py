"""
Errors - Exception taxonomy for the daemon client
Connection, request and configuration failures.
"""


class ClientError(Exception):
    """Base exception for fuo-tui."""
    pass


class ConfigurationError(ClientError):
    """Invalid configuration value."""
    pass


class ConnectError(ClientError):
    """Could not establish a session with the daemon."""
    pass


class AuthenticationError(ConnectError):
    """The daemon refused the configured credentials."""
    pass


class RequestError(ClientError):
    """A submitted command did not produce a reply."""
    pass


class RequestTimeout(RequestError):
    """No reply arrived before the request deadline."""
    pass


class ConnectionLost(RequestError):
    """The connection dropped (or was shut down) while the request was pending."""
    pass


class ProtocolError(RequestError):
    """The daemon sent a frame that could not be decoded."""
    pass
