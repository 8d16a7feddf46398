"""
Exceptions raised by the sync core.

Input, authorization and not-found errors are per-operation: the pipeline
catches them and reports a FailedOperation instead of aborting the batch.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for sync failures."""


class InvalidOperationError(SyncError):
    """A sync operation is malformed (bad JSON, missing id, bad type)."""


class UnknownEntityTypeError(InvalidOperationError):
    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(f"Unknown entity type: {entity_type}")


class UnknownStrategyError(SyncError):
    def __init__(self, strategy: str):
        self.strategy = strategy
        super().__init__(f"Unknown conflict resolution strategy: {strategy}")


class EntityNotFoundError(SyncError):
    def __init__(self, entity_type: str, entity_id: Optional[str]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} with id {entity_id} not found")


class AccessDeniedError(SyncError):
    """The caller lacks the trip role (or ownership) an operation needs."""


class DependencyCycleError(SyncError):
    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Circular dependency detected involving operation {operation_id}")
