"""No-op store, the default when the pipeline provides no storage directory."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from bbpipe_store.base import BaseStore

if TYPE_CHECKING:
    from bbpipe_store.models import ExecutionRecord


class NoOpStore(BaseStore):
    """Discards everything. Lets the CLI call store methods unconditionally."""

    def save(self, record: ExecutionRecord) -> None:
        pass

    def set_output(self, name: str, value: str) -> None:
        pass

    def save_state(self, name: str, value: Any) -> None:
        pass

    def get_state(self, name: str) -> Optional[Any]:
        return None
