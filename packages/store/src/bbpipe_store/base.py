"""Abstract store interface.

The CLI depends on BaseStore, not on a concrete backend, so where pipe
outputs are written can change without touching the orchestrator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from bbpipe_store.models import ExecutionRecord


class BaseStore(ABC):
    """Persistence for execution records, pipeline outputs and pipe state.

    Implementations must be safe to call from CI: failures are logged and
    swallowed so that persistence never decides whether a run succeeded.
    """

    @abstractmethod
    def save(self, record: ExecutionRecord) -> None:
        """Persist the record of a finished run."""

    @abstractmethod
    def set_output(self, name: str, value: str) -> None:
        """Expose a named output to later pipeline steps."""

    @abstractmethod
    def save_state(self, name: str, value: Any) -> None:
        """Keep a JSON-serialisable value for subsequent runs."""

    @abstractmethod
    def get_state(self, name: str) -> Optional[Any]:
        """Return a saved state value, or None if it was never saved."""

    def close(self) -> None:
        """Release any resources held by the store.

        Optional; the default is a no-op so callers can always call close().
        """
