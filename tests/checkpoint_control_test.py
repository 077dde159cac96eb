"""
Checkpoint files and the out-of-band control channel
"""

import json
import os
import tempfile
import time
import unittest
from unittest.mock import MagicMock

from multimodal.checkpoint import CheckpointStore, CHECKPOINT_VERSION
from multimodal.control import ControlChannel, ControlWatcher, CONTROL_FILE


class TestCheckpointStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "run", "checkpoint.json")
        self.store = CheckpointStore(self.path)

    def tearDown(self):
        self.tmp.cleanup()

    def test_round_trip(self):
        self.store.save({"batch_number": 4, "totals": {"downloaded": 120}})
        state = self.store.load()
        self.assertEqual(state["batch_number"], 4)
        self.assertEqual(state["totals"], {"downloaded": 120})
        self.assertEqual(state["version"], CHECKPOINT_VERSION)
        # No temp files left behind
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["checkpoint.json"])

    def test_missing_file(self):
        self.assertIsNone(self.store.load())

    def test_corrupt_file_is_ignored(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write("{not json")
        self.assertIsNone(self.store.load())

    def test_other_version_is_ignored(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump({"version": CHECKPOINT_VERSION + 1, "batch_number": 9}, fh)
        self.assertIsNone(self.store.load())


class TestControlChannel(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.channel = ControlChannel(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def write_command(self, command, issued_at):
        with open(os.path.join(self.tmp.name, CONTROL_FILE), "w", encoding="utf-8") as fh:
            json.dump({"command": command, "issued_at": issued_at}, fh)

    def test_commands_are_delivered_once(self):
        self.channel.send("pause")
        self.assertEqual(self.channel.poll(), "pause")
        self.assertIsNone(self.channel.poll())

    def test_stale_commands_are_ignored_after_reset(self):
        self.write_command("stop", time.time() - 60)
        self.channel.reset()
        self.assertIsNone(self.channel.poll())
        self.write_command("resume", time.time() + 1)
        self.assertEqual(self.channel.poll(), "resume")

    def test_unknown_commands(self):
        with self.assertRaises(ValueError):
            self.channel.send("restart")
        self.write_command("restart", time.time())
        self.assertIsNone(self.channel.poll())

    def test_no_control_file(self):
        self.assertIsNone(self.channel.poll())

    def test_status_round_trip(self):
        self.assertIsNone(self.channel.read_status())
        self.channel.write_status({"phase": "download", "batch_number": 2})
        status = ControlChannel(self.tmp.name).read_status()
        self.assertEqual(status["phase"], "download")
        self.assertIn("updated_at", status)


class TestControlWatcher(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.channel = ControlChannel(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_dispatches_commands_and_publishes_status(self):
        handlers = {"pause": MagicMock(), "stop": MagicMock()}
        watcher = ControlWatcher(self.channel, handlers, lambda: {"phase": "download"})
        self.channel.send("stop")

        self.assertEqual(watcher.check(), "stop")
        handlers["stop"].assert_called_once_with()
        handlers["pause"].assert_not_called()
        self.assertEqual(self.channel.read_status()["phase"], "download")
        self.assertIsNone(watcher.check())

    def test_earlier_commands_are_not_replayed(self):
        self.channel.send("stop")
        handler = MagicMock()
        watcher = ControlWatcher(self.channel, {"stop": handler}, lambda: {"phase": None}, interval=0.01)
        watcher.start()
        time.sleep(0.05)
        watcher.stop()

        handler.assert_not_called()
        self.assertFalse(watcher.is_alive())
        self.assertFalse(self.channel.read_status()["running"])


if __name__ == "__main__":
    unittest.main()
