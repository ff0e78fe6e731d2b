# backend/logic/errors.py


class EdushareError(Exception):
    """Base class for domain errors raised by the logic layer."""


class NotFound(EdushareError):
    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InvalidActionError(EdushareError, ValueError):
    """An offline action payload is missing fields or carries bad values."""


class StorageError(EdushareError):
    """A storage collaborator call failed."""
