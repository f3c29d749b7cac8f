class TransportError(Exception):
    """Message delivery through the chat transport failed."""

    def __init__(self, chat_id: str, message: str):
        self.chat_id = chat_id
        self.message = message
        super().__init__(f"Delivery to {chat_id} failed: {message}")


class StoreError(Exception):
    """Session store or record store operation failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class ClassifierError(Exception):
    """An AI/NLP call failed or returned an unusable answer."""
