"""
External Collaborator Protocols

Persistence, notification and operator alerting are owned by other parts of
the application. The pipeline only depends on these narrow contracts.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Persistence(Protocol):
    """Document store used for degraded emergency records."""

    async def save(self, record: dict[str, Any]) -> Any:
        ...

    async def find(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        ...


@runtime_checkable
class Notifier(Protocol):
    """Fire-and-forget notification after Emergency processing."""

    async def notify(self, event: dict[str, Any]) -> None:
        ...


@runtime_checkable
class OperatorChannel(Protocol):
    """Paging / alerting channel for the one fatal pipeline condition."""

    async def alert(self, message: str, details: dict[str, Any]) -> None:
        ...
