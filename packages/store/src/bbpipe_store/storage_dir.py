"""PipeStorageStore: files in the Bitbucket pipe storage directory.

Bitbucket Pipelines mounts BITBUCKET_PIPE_STORAGE_DIR for every pipe and
keeps it between steps of the same pipeline. Layout:

  claude_output.json  the record of the latest run
  outputs.env         NAME=value lines, one per output, appended
  state.json          a JSON object of saved state values
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from bbpipe_store.base import BaseStore

if TYPE_CHECKING:
    from bbpipe_store.models import ExecutionRecord

logger = logging.getLogger(__name__)

RECORD_FILE = "claude_output.json"
OUTPUTS_FILE = "outputs.env"
STATE_FILE = "state.json"

_OUTPUT_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PipeStorageStore(BaseStore):
    def __init__(self, storage_dir: str):
        self.path = Path(storage_dir)
        self.path.mkdir(parents=True, exist_ok=True)

    def save(self, record: ExecutionRecord) -> None:
        try:
            (self.path / RECORD_FILE).write_text(json.dumps(record.to_dict(), indent=2))
        except OSError as e:
            logger.warning("Failed to save execution record: %s", e)

    def set_output(self, name: str, value: str) -> None:
        if not _OUTPUT_NAME.match(name):
            logger.warning("Ignoring output with invalid name: %r", name)
            return
        # outputs.env is line-based, so embedded newlines are escaped.
        escaped = str(value).replace("\n", "\\n")
        line = f"{name}={escaped}\n"
        try:
            with open(self.path / OUTPUTS_FILE, "a") as f:
                f.write(line)
        except OSError as e:
            logger.warning("Failed to set output %s: %s", name, e)
            return
        logger.info("Output: %s=%s", name, escaped)

    def save_state(self, name: str, value: Any) -> None:
        state = self._load_state()
        state[name] = value
        try:
            (self.path / STATE_FILE).write_text(json.dumps(state, indent=2, default=str))
        except OSError as e:
            logger.warning("Failed to save state %s: %s", name, e)

    def get_state(self, name: str) -> Optional[Any]:
        return self._load_state().get(name)

    def _load_state(self) -> dict:
        state_path = self.path / STATE_FILE
        if not state_path.exists():
            return {}
        try:
            data = json.loads(state_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read %s, starting from empty state: %s", state_path, e)
            return {}
        return data if isinstance(data, dict) else {}
