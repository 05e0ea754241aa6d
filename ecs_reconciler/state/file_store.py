# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
StateStore persisted into a local JSON file.

Writes go to a temporary file in the same directory, which then replaces the state file, so a crash mid-write
leaves the previous state in place. The lock is a sibling file created exclusively.
"""

from __future__ import annotations

import json
import os
import tempfile
from os import path

from ecs_reconciler.common import LOG, canonical_json
from ecs_reconciler.exceptions import LockHeldError
from ecs_reconciler.state.state_store import StateStore


class FileStateStore(StateStore):
    """
    :ivar str file_path: path to the state file
    :ivar str lock_path: path to the lock file
    """

    backend = "file"

    def __init__(self, file_path: str):
        super().__init__()
        self.file_path = path.abspath(file_path)
        self.lock_path = f"{self.file_path}.lock"

    def _load(self) -> None:
        if not path.exists(self.file_path):
            LOG.debug(f"No state file at {self.file_path}. Starting from an empty state")
            return
        with open(self.file_path, "r", encoding="utf-8") as state_fd:
            self.load_dict(json.loads(state_fd.read()))

    def _persist(self) -> None:
        directory = path.dirname(self.file_path)
        if not path.exists(directory):
            os.makedirs(directory, exist_ok=True)
        body = canonical_json(self.to_dict(), indent=2)
        with tempfile.NamedTemporaryFile(
            "w",
            dir=directory,
            prefix=f".{path.basename(self.file_path)}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        ) as tmp_fd:
            tmp_fd.write(body)
            tmp_fd.flush()
            os.fsync(tmp_fd.fileno())
            tmp_path = tmp_fd.name
        try:
            os.replace(tmp_path, self.file_path)
        except OSError:
            os.remove(tmp_path)
            raise

    def _read_lock_file(self):
        try:
            with open(self.lock_path, "r", encoding="utf-8") as lock_fd:
                return json.loads(lock_fd.read())
        except FileNotFoundError:
            return None
        except ValueError:
            return {"Owner": "unknown", "Created": "unknown"}

    @property
    def lock_info(self):
        return self._read_lock_file()

    def _acquire_lock(self, lock_info: dict) -> None:
        directory = path.dirname(self.lock_path)
        if not path.exists(directory):
            os.makedirs(directory, exist_ok=True)
        try:
            lock_fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder = self._read_lock_file() or {}
            raise LockHeldError(
                f"State {self.file_path} is locked by {holder.get('Owner')} since {holder.get('Created')}",
                holder,
            )
        with os.fdopen(lock_fd, "w", encoding="utf-8") as lock_file:
            lock_file.write(json.dumps(lock_info))
        self._lock_info = lock_info
        self._loaded = False
        try:
            self._ensure_loaded()
        except Exception:
            LOG.error("Failed to load the state, releasing the lock")
            self._release_lock(lock_info)
            raise

    def _release_lock(self, lock_info: dict) -> None:
        holder = self._read_lock_file()
        if holder and holder.get("ID") == lock_info.get("ID"):
            os.remove(self.lock_path)
        self._lock_info = None

    def force_unlock(self) -> None:
        holder = self._read_lock_file()
        if holder is None:
            return
        LOG.warning(f"Forcing release of the state lock held by {holder.get('Owner')}")
        os.remove(self.lock_path)
        self._lock_info = None
