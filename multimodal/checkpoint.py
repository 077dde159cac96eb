import json
import os
import logging
import tempfile
from pathlib import Path
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


class CheckpointStore:
    """
    FLOW: Serializes orchestrator state to JSON -> writes it to a temp file in the same directory ->
    fsync -> os.replace onto the checkpoint path, so readers only ever see a complete file.
    """

    def __init__(self, path):
        self.path = Path(path)

    def save(self, state: Dict[str, Any]) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = dict(state, version=CHECKPOINT_VERSION)
        fd, tmp = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, default=str)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return self.path

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                state = json.load(fh)
        except (OSError, ValueError) as e:
            logger.error(f"[CHECKPOINT] Could not read {self.path}: {e}")
            return None
        if state.get("version") != CHECKPOINT_VERSION:
            logger.warning(f"[CHECKPOINT] Ignoring checkpoint with version {state.get('version')}")
            return None
        return state
