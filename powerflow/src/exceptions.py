"""
Exception hierarchy for the power-flow hub.

Lifecycle operations (table creation, blueprint lookup) raise these to their
caller. The ingest hot path never raises them outward: it logs and moves on.

CHANGELOG:
- 2026-10-18: Add TableNameConflict
- 2026-10-06: Initial creation (STORY-103)
"""


class PowerFlowError(Exception):
    """Base class for all hub errors."""


class BlueprintNotFound(PowerFlowError):
    """No blueprint document declares the requested reference."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Blueprint not found for reference: {reference}")
        self.reference = reference


class SchemaIncomplete(PowerFlowError):
    """The matched blueprint declares no usable registers."""

    def __init__(self, reference: str, source: str | None = None) -> None:
        detail = f" (file: {source})" if source else ""
        super().__init__(f"No registers declared for reference: {reference}{detail}")
        self.reference = reference
        self.source = source


class StoreUnavailable(PowerFlowError):
    """The SQLite store stayed busy or failed after all retries."""


class TableNameConflict(PowerFlowError):
    """Two device names map to the same physical table name."""

    def __init__(self, device_name: str, table_name: str, owner: str) -> None:
        super().__init__(
            f"Table {table_name} for device '{device_name}' is already used by device '{owner}'"
        )
        self.device_name = device_name
        self.table_name = table_name
        self.owner = owner
