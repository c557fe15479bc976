from typing import Dict, List


class DynaCrudError(Exception):
    """Base class for every error raised by the engine."""


class SchemaError(DynaCrudError):
    """Unknown table, unsupported dialect or an invalid metadata payload."""


class EntityValidationError(DynaCrudError):
    """One or more fields failed validation."""

    def __init__(self, errors: Dict[str, List[str]]):
        self.errors = errors
        super().__init__(f"Validation failed for: {', '.join(sorted(errors))}")


class PermissionDeniedError(DynaCrudError):
    pass


class WorkflowError(DynaCrudError):
    """Illegal transition, bad definition or workflow not enabled."""


class PersistenceError(DynaCrudError):
    pass
