"""Exception taxonomy shared by segmentation and composition."""


class BackdropError(Exception):
    """Base class for every error raised by the engine."""


class ModelUnavailableError(BackdropError):
    """The model file is missing or failed validation."""


class RuntimeUnsupportedError(BackdropError):
    """The inference runtime cannot be loaded on this platform."""


class InferenceError(BackdropError):
    """A single inference call produced an unusable result."""


class ImageDecodeError(BackdropError, ValueError):
    """An input file is missing, corrupt or in an unsupported format."""


class CompositionError(BackdropError, RuntimeError):
    """Blending or saving the composite failed."""


class OperationCancelled(BackdropError):
    """The caller aborted a long-running pixel loop."""
