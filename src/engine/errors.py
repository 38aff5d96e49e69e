"""Error taxonomy for the orchestration engine.

Every error carries a short code so CLI and HTTP callers can report it
without parsing messages:

- E1xx: template errors (raised before any provisioning starts)
- E2xx: provider errors (recorded in the journal, drive rollback)
- E3xx: stack and changeset state errors
- E4xx: rollback failures (terminal, operator intervention required)
"""

from typing import Optional


class EngineError(Exception):
    """Base exception for engine errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class TemplateError(EngineError):
    """Template could not be turned into a valid resource graph."""


class TemplateFormatError(TemplateError):
    """Template document is malformed (missing fields, wrong types)."""

    def __init__(self, message: str):
        super().__init__("E100", message)


class DuplicateLogicalIdError(TemplateError):
    """Two declarations share a logical identifier."""

    def __init__(self, logical_id: str):
        self.logical_id = logical_id
        super().__init__("E101", f"DuplicateLogicalId({logical_id})")


class UnresolvedReferenceError(TemplateError):
    """A declaration references an undeclared logical identifier."""

    def __init__(self, logical_id: str, reference: str):
        self.logical_id = logical_id
        self.reference = reference
        super().__init__(
            "E102",
            f"UnresolvedReference({reference}) in resource '{logical_id}'",
        )


class CyclicDependencyError(TemplateError):
    """The dependency edges contain a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__("E103", f"CyclicDependency({path})")


class ProviderError(EngineError):
    """A provider adapter call failed."""

    def __init__(self, message: str, logical_id: Optional[str] = None, code: str = "E200"):
        self.logical_id = logical_id
        super().__init__(code, message)


class ProviderTimeoutError(ProviderError):
    """A provider did not answer before its deadline."""

    def __init__(self, message: str, logical_id: Optional[str] = None):
        super().__init__(message, logical_id, code="E201")


class CallbackServerError(EngineError):
    """The callback endpoint could not be started."""

    def __init__(self, message: str):
        super().__init__("E202", message)


class StackNotFoundError(EngineError):
    """No stack record exists for the identifier."""

    def __init__(self, stack_id: str):
        self.stack_id = stack_id
        super().__init__("E300", f"Stack not found: {stack_id}")


class StackLockedError(EngineError):
    """Another apply, rollback or destroy holds the stack lease."""

    def __init__(self, stack_id: str, owner: str = ''):
        self.stack_id = stack_id
        detail = f" (held by {owner})" if owner else ""
        super().__init__("E301", f"Stack '{stack_id}' is locked{detail}")


class ChangeSetNotFoundError(EngineError):
    """No changeset with the identifier exists for the stack."""

    def __init__(self, stack_id: str, changeset_id: str):
        super().__init__("E302", f"ChangeSet '{changeset_id}' not found for stack '{stack_id}'")


class StaleChangeSetError(EngineError):
    """ChangeSet can no longer be executed."""

    def __init__(self, changeset_id: str, reason: str):
        self.changeset_id = changeset_id
        super().__init__("E303", f"ChangeSet '{changeset_id}' cannot be executed: {reason}")


class RollbackFailureError(EngineError):
    """Rollback could not restore one or more resources."""

    def __init__(self, stack_id: str, failures: dict[str, str]):
        self.stack_id = stack_id
        self.failures = dict(failures)
        detail = "; ".join(f"{lid}: {err}" for lid, err in sorted(self.failures.items()))
        super().__init__("E400", f"Rollback failed for stack '{stack_id}': {detail}")
