"""Session orchestration for chatting with a locally-resident language model."""

from .cancellation import CancellationToken, OperationCancelled
from .domain.models import Message, ModelStatus
from .services.session import ChatSession

__all__ = ["CancellationToken", "OperationCancelled", "Message", "ModelStatus", "ChatSession"]
