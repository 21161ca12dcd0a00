"""Exception hierarchy shared by the session components."""


class GuiaVisionError(Exception):
    """Base class for all assistant errors."""


class DeviceAcquisitionError(GuiaVisionError):
    """Camera, microphone or speaker could not be opened."""


class TransportConnectError(GuiaVisionError):
    """The live inference session could not be established."""


class AudioDecodeError(GuiaVisionError):
    """An inbound audio payload could not be turned into a chunk."""


class InvalidStateTransition(GuiaVisionError):
    def __init__(self, current, target):
        super().__init__(f"Invalid session transition {current.value} -> {target.value}")
        self.current = current
        self.target = target
