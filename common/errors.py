from typing import Optional, Sequence


class BoardAppError(Exception):
    """Base class for every failure raised while composing a stack."""


class ValidationError(BoardAppError):
    """A configuration field or resource attribute is missing or malformed."""

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        self.resource_id = resource_id
        self.field = field
        context = []
        if resource_id:
            context.append(f"resource={resource_id}")
        if field:
            context.append(f"field={field}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)


class CycleError(BoardAppError):
    """The resource references form a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(
            "Dependency cycle between resources: " + " -> ".join(self.cycle)
        )


class PackagingError(BoardAppError):
    """The artifact source is missing, empty or unreadable."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Unable to package artifact at {path}: {reason}")
