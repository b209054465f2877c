"""Error types raised across the relay and the client audio pipeline."""


class VoiceRelayError(Exception):
    """Base class for all relay and pipeline errors."""


class ConnectError(VoiceRelayError):
    """The upstream connection (or its credential) could not be obtained."""


class DecodeError(VoiceRelayError):
    """An audio payload is not valid base64 PCM16."""


class TransportError(VoiceRelayError):
    """A leg of the connection pair dropped unexpectedly."""


class DeviceError(VoiceRelayError):
    """A capture or playback device is unavailable or was denied."""
