"""
Abstract base classes for external collaborators.

This module defines the interfaces the engine drives during automated
phases. Concrete hosting-platform adapters and generation backends live
outside this package; the engine depends only on these contracts.

Error contract:
    Implementations raise ``GenerationError`` / ``PlatformError`` with
    ``transient=True`` when a retry may succeed (rate limits, timeouts,
    5xx responses) and ``transient=False`` otherwise. Any other exception
    is classified by message by the failure classifier.
"""

from abc import ABC, abstractmethod
from typing import Any

from issue_pilot.enums import ChangeStatus
from issue_pilot.models.domain import ChangeRef, Item


class GenerationProvider(ABC):
    """Abstract base class for the AI generation backend.

    The engine treats generated artifacts as opaque: whatever ``generate``
    returns is stored on the phase transition and handed to later phases
    through the context.
    """

    @abstractmethod
    async def generate(self, kind: str, context: dict[str, Any]) -> Any:
        """Produce an artifact for a generation phase.

        Args:
            kind: Phase value requesting the artifact, e.g. "plan-generation"
                or "code-generation".
            context: Item details, artifacts of earlier phases, and any
                human feedback (``feedback`` key) from a changes-requested
                approval.

        Returns:
            The artifact. For refactoring, ``None`` or an empty value means
            no change is proposed.

        Raises:
            GenerationError: If generation fails.
        """
        pass


class Platform(ABC):
    """Abstract base class for the version-control / issue-tracking platform."""

    @abstractmethod
    async def get_items(self, filter: dict[str, Any] | None = None) -> list[Item]:
        """Retrieve candidate items, oldest first.

        Args:
            filter: Implementation-defined selection criteria (labels,
                state, ...).

        Raises:
            PlatformError: If the request fails.
        """
        pass

    @abstractmethod
    async def create_branch(self, item: Item, base: str | None = None) -> str:
        """Create a working branch for the item and return its name.

        Implementations should return the existing branch if it already
        exists, so that a retried phase is idempotent.
        """
        pass

    @abstractmethod
    async def commit(self, branch: str, changes: Any, message: str) -> str:
        """Commit generated changes to a branch and return the commit id."""
        pass

    @abstractmethod
    async def open_change(self, item: Item, branch: str, title: str, body: str) -> ChangeRef:
        """Open a change request (pull request) from the branch."""
        pass

    @abstractmethod
    async def get_status(self, change: ChangeRef) -> ChangeStatus:
        """Return the combined check / review status of a change."""
        pass

    @abstractmethod
    async def merge(self, change: ChangeRef) -> None:
        """Merge the change into its target."""
        pass

    @abstractmethod
    async def close(self, item: Item, comment: str | None = None) -> None:
        """Close the item, optionally leaving a final comment."""
        pass
