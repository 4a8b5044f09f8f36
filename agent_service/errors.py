"""Error taxonomy shared by every component.

Each component boundary converts these into its own result envelope
(CrudResult, StepResult, ProcessResult); only the top-level request handler
is allowed to see one escape.
"""

from typing import Optional


class AgentServiceError(Exception):
    """Base class for all service errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(AgentServiceError):
    """Entity type or operation not registered."""

    def __init__(self, message: str, entity_type: Optional[str] = None, operation: Optional[str] = None):
        self.entity_type = entity_type
        self.operation = operation
        super().__init__(message)


class ValidationError(AgentServiceError):
    """Missing required field, failed validator or missing identifier."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class PlanGenerationError(AgentServiceError):
    """The collaborator's output could not be turned into a valid plan."""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        self.raw_output = raw_output
        super().__init__(message)


class StepExecutionError(AgentServiceError):
    """A single plan step failed; recorded on its StepResult."""

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        super().__init__(message)


class CollaboratorUnavailableError(AgentServiceError):
    """The LLM collaborator could not be reached at all."""


class LLMOutputError(AgentServiceError):
    """Structured output expected from the collaborator could not be decoded."""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        self.raw_output = raw_output
        super().__init__(message)


class StoreError(AgentServiceError):
    """Base class for entity store failures."""


class RecordNotFoundError(StoreError):
    def __init__(self, entity_type: str, identifier: str):
        self.entity_type = entity_type
        self.identifier = identifier
        super().__init__(f"No {entity_type} record found with identifier {identifier!r}")


class DuplicateRecordError(StoreError):
    def __init__(self, entity_type: str, identifier: str):
        self.entity_type = entity_type
        self.identifier = identifier
        super().__init__(f"A {entity_type} record with identifier {identifier!r} already exists")
