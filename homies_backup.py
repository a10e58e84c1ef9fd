"""Local backup snapshots of the message log.

Every snapshot is a new file ``{prefix}{millis}.json`` in the backup directory; the
timestamp is zero-padded so lexicographic and chronological order agree, and it is
bumped when two snapshots land in the same millisecond. Files are never rewritten;
only the oldest ones are pruned once more than ``keep`` exist.
"""
import json
import logging
import os
import threading
import time

logger = logging.getLogger(__name__)

STAMP_WIDTH = 15


class BackupWriter:

    def __init__(self, directory, prefix="messages.json.backup-", keep=3):
        self.directory = directory
        self.prefix = prefix
        self.keep = keep
        self._last_stamp = 0
        self._lock = threading.Lock()

    def _next_stamp(self):
        with self._lock:
            files = self._backup_files()
            newest = self._stamp_of(files[-1]) if files else 0
            stamp = max(int(time.time() * 1000), self._last_stamp + 1, newest + 1)
            self._last_stamp = stamp
            return stamp

    def _stamp_of(self, filename):
        core = filename[len(self.prefix):]
        if core.endswith(".json"):
            core = core[:-5]
        try:
            return int(core)
        except ValueError:
            return -1

    def _backup_files(self):
        """Backup filenames, oldest first."""
        if not os.path.isdir(self.directory):
            return []
        names = [n for n in os.listdir(self.directory)
                 if n.startswith(self.prefix) and n.endswith(".json") and self._stamp_of(n) >= 0]
        return sorted(names, key=self._stamp_of)

    def snapshot(self, messages):
        """Write the full message set to a new backup file and return its path."""
        os.makedirs(self.directory, exist_ok=True)
        stamp = self._next_stamp()
        name = f"{self.prefix}{stamp:0{STAMP_WIDTH}d}.json"
        path = os.path.join(self.directory, name)
        tmp_path = os.path.join(self.directory, f".{name}.tmp")

        data = {"savedAt": stamp, "messages": list(messages)}
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp_path, path)
        logger.info("Created local backup: %s (%d messages)", name, len(data["messages"]))

        self.prune()
        return path

    def prune(self):
        if not self.keep or self.keep <= 0:
            return
        files = self._backup_files()
        for name in files[:max(0, len(files) - self.keep)]:
            try:
                os.remove(os.path.join(self.directory, name))
                logger.debug("Removed old backup: %s", name)
            except OSError as e:
                logger.warning("Error removing old backup %s: %s", name, e)

    def load_latest(self):
        """Return the messages of the newest readable backup, or None.

        Corrupt or unreadable files are logged and skipped in favour of the next
        most recent one.
        """
        for name in reversed(self._backup_files()):
            path = os.path.join(self.directory, name)
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = json.load(fh)
                messages = data["messages"] if isinstance(data, dict) else data
                if not isinstance(messages, list):
                    raise ValueError("backup does not hold a message list")
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable backup %s: %s", name, e)
                continue
            logger.info("Loaded from backup: %s (%d messages)", name, len(messages))
            return messages
        return None
