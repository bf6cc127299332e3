"""Error taxonomy for the chat backend.

GenerationError: the generation service produced nothing usable.
StoreError: the persistence backend rejected or failed an operation.
"""


class GenerationError(Exception):
    """Base class for generation service failures."""


class EmptyResponseError(GenerationError):
    """The generation service answered without any text."""


class UpstreamGenerationError(GenerationError):
    """Transport or service failure while calling the generation service."""


class StoreError(Exception):
    """Base class for persistence failures."""


class ConversationNotFoundError(StoreError):
    """Conversation does not exist or is not owned by the caller."""

    def __init__(self, conversation_id: int):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class ConversationBusyError(Exception):
    """A message send is already in flight for this conversation."""


class InvalidStateError(Exception):
    """Operation not allowed in the controller's current lifecycle state."""
