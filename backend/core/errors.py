"""Error taxonomy shared by the answering pipeline and the HTTP layer."""


class AssistantError(Exception):
    """Base class for every error raised by the assistant core."""

    status_code = 500
    public_message = "Something went wrong."


class AuthError(AssistantError):
    status_code = 401
    public_message = "Missing or invalid token."


class ExtractionError(AssistantError):
    status_code = 422
    public_message = "The uploaded document could not be read."


class FilterSynthesisError(AssistantError):
    """Model output could not be turned into a structured filter."""


class RetrievalError(AssistantError):
    status_code = 503
    public_message = "Retrieval backend unavailable."


class EmbeddingError(RetrievalError):
    pass


class StreamingError(AssistantError):
    status_code = 502
    public_message = "Bot failed!"


class PersistenceError(AssistantError):
    public_message = "Failed to save the conversation."


class ConversationAccessError(PersistenceError):
    status_code = 404
    public_message = "Conversation not found!"


class ChannelClosed(AssistantError):
    """The client side of a streaming channel went away."""
