"""Error taxonomy shared by the engines and session components.

Every failure raised across module boundaries derives from ChatError so the
session and the HTTP layer can catch one type and read a machine code.
"""

from typing import Optional


class ChatError(Exception):
    """Base error.

    Attributes:
        code: machine readable code, e.g. ``ENGINE_ERROR``.
        message: human readable description.
        extra: additional context such as the model id.
    """

    default_code = "CHAT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **extra):
        self.code = code or self.default_code
        self.message = message
        self.extra = extra
        super().__init__(message)


class EngineError(ChatError):
    """The inference runtime rejected a request or failed mid-stream."""

    default_code = "ENGINE_ERROR"


class EngineConnectionError(EngineError):
    """The inference runtime could not be reached."""

    default_code = "ENGINE_UNREACHABLE"


class ModelSetupError(ChatError):
    """Downloading or preparing a model failed."""

    default_code = "MODEL_SETUP_ERROR"


class ModelNotDownloadedError(ChatError):
    """A one-shot prompt targeted a model that is not on device."""

    default_code = "MODEL_NOT_DOWNLOADED"


class ModelUnavailableError(ChatError):
    """The model handle was released while a generation was using it."""

    default_code = "MODEL_UNAVAILABLE"


class GenerationError(ChatError):
    """A one-shot generation failed."""

    default_code = "GENERATION_ERROR"


class StorageError(ChatError):
    """A repository could not read or write a document."""

    default_code = "STORAGE_ERROR"
