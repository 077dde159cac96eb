"""
Out-of-band control for a running crawl.

The CLI's pause/resume/stop commands write a command file into the run's state
directory; a ControlWatcher thread polls it for the running crawl and publishes its status file.
"""

import json
import os
import time
import logging
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional, Dict, Any

logger = logging.getLogger(__name__)

COMMANDS = ("pause", "resume", "stop")
POLL_INTERVAL = 0.5
CONTROL_FILE = "control.json"
STATUS_FILE = "status.json"


def _write_json(path: Path, data: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        json.dump(data, fh, default=str)
    os.replace(tmp, path)


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except ValueError as e:
        logger.warning(f"[CONTROL] Unreadable {path.name}: {e}")
        return None


class ControlChannel:

    def __init__(self, state_dir):
        self.state_dir = Path(state_dir)
        self.control_path = self.state_dir / CONTROL_FILE
        self.status_path = self.state_dir / STATUS_FILE
        self._last_seen = 0.0

    def send(self, command: str) -> Dict[str, Any]:
        if command not in COMMANDS:
            raise ValueError(f"unknown control command '{command}'")
        message = {"command": command, "issued_at": time.time()}
        _write_json(self.control_path, message)
        return message

    def reset(self):
        """Ignore commands issued before now (stale files from an earlier run)."""
        message = _read_json(self.control_path)
        self._last_seen = max(time.time(), float((message or {}).get("issued_at", 0)))

    def poll(self) -> Optional[str]:
        """Returns a command issued since the last poll, or None."""
        message = _read_json(self.control_path)
        if not message:
            return None
        issued_at = float(message.get("issued_at", 0))
        if issued_at <= self._last_seen:
            return None
        self._last_seen = issued_at
        command = message.get("command")
        return command if command in COMMANDS else None

    def write_status(self, status: Dict[str, Any]):
        _write_json(self.status_path, dict(status, updated_at=time.time()))

    def read_status(self) -> Optional[Dict[str, Any]]:
        return _read_json(self.status_path)


class ControlWatcher(threading.Thread):
    """
    FLOW: every poll interval -> read a new command -> call its handler ->
    publish `status()`. A final status with running=False is written on stop().
    """

    def __init__(self, channel: ControlChannel, handlers: Dict[str, Callable[[], None]],
                 status: Callable[[], Dict[str, Any]], interval: float = POLL_INTERVAL):
        super().__init__(name="ControlWatcher", daemon=True)
        self.channel = channel
        self.handlers = handlers
        self.status = status
        self.interval = interval
        self._done = threading.Event()
        # Commands left over from an earlier run are not replayed
        self.channel.reset()

    def run(self):
        while not self._done.wait(self.interval):
            self.check()
        self.channel.write_status(dict(self.status(), running=False))

    def check(self) -> Optional[str]:
        command = self.channel.poll()
        handler = self.handlers.get(command) if command else None
        if handler is not None:
            logger.info(f"[CONTROL] Received '{command}'")
            handler()
        self.channel.write_status(self.status())
        return command

    def stop(self, timeout: float = 2.0):
        self._done.set()
        if self.is_alive():
            self.join(timeout)
