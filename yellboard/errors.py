"""Error taxonomy shared by the sync, transfer and playback services."""


class YellboardError(Exception):
    """Base class for every error raised by yellboard itself."""


class BrokerError(YellboardError):
    """Connecting to, subscribing on, or publishing through the broker failed."""


class TransferError(YellboardError):
    """A payload request timed out or found no responder."""


class SerializationError(YellboardError):
    """A listing payload could not be decoded."""


class ConfigError(YellboardError, ValueError):
    """A setting is missing or malformed."""
