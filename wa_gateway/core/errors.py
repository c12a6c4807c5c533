class GatewayError(Exception):
    """Base class for every error raised by the gateway."""


class ConfigError(GatewayError):
    """Missing or invalid configuration. Fatal at startup."""


class StoreError(GatewayError):
    """A read or write against the credential store failed."""


class StoreConnectionError(StoreError):
    """The credential store could not be opened. Fatal at startup."""


class LaunchError(GatewayError):
    """The browser session could not be brought up."""


class NotReadyError(GatewayError):
    """A message was dispatched while the session is not ready."""


class SendError(GatewayError):
    """The browser session failed to deliver a message."""
