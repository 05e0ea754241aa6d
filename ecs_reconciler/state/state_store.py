# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module for the StateStore. The store is the only owner of the StateRecords persistence.

A store holds one record per resource address and a serial, incremented on every write, used to detect plans
computed against an older state.
Only one apply at a time can hold the store lock. Trying to get it while held fails straight away.
"""

from __future__ import annotations

import getpass
import os
import socket
import threading
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime as dt
from datetime import timezone
from typing import List, Optional, Union
from uuid import uuid4

from ecs_reconciler.common import LOG
from ecs_reconciler.exceptions import LockHeldError
from ecs_reconciler.state.state_record import StateRecord

STATE_FORMAT_VERSION = 1


def address_key(address) -> str:
    """Records are keyed with the string form of the address"""
    return str(address)


def new_lock_info(owner: str = None, operation: str = "apply") -> dict:
    """
    Information stored with a lock, to tell the operator who holds it.
    """
    return {
        "ID": str(uuid4()),
        "Owner": owner if owner else f"{getpass.getuser()}@{socket.gethostname()}",
        "Pid": os.getpid(),
        "Operation": operation,
        "Created": dt.now(timezone.utc).isoformat(),
    }


class StateStore:
    """
    In memory StateStore, and base class for the persisted ones.
    Subclasses implement _load, _persist, _acquire_lock and _release_lock.

    :ivar str lineage: unique id of this state, kept for its whole life
    """

    backend = "memory"

    def __init__(self):
        self._records: OrderedDict = OrderedDict()
        self._serial = 0
        self.lineage = str(uuid4())
        self._write_lock = threading.RLock()
        self._lock_info: Optional[dict] = None
        self._loaded = False

    def __repr__(self):
        return f"{self.__class__.__name__}(serial={self.serial}, resources={len(self.addresses())})"

    def _ensure_loaded(self) -> None:
        with self._write_lock:
            if not self._loaded:
                self._load()
                self._loaded = True

    def _load(self) -> None:
        """Loads the records from the backend. Nothing to do in memory."""

    def _persist(self) -> None:
        """Writes the records to the backend. Nothing to do in memory."""

    def to_dict(self) -> dict:
        with self._write_lock:
            return {
                "FormatVersion": STATE_FORMAT_VERSION,
                "Lineage": self.lineage,
                "Serial": self._serial,
                "Resources": OrderedDict(
                    (key, record.to_dict()) for key, record in self._records.items()
                ),
            }

    def load_dict(self, content: dict) -> None:
        """
        Replaces the store content with the one from a state document
        """
        if not content:
            return
        if content.get("FormatVersion", STATE_FORMAT_VERSION) != STATE_FORMAT_VERSION:
            raise ValueError(
                "Unsupported state format version",
                content.get("FormatVersion"),
                "Expected",
                STATE_FORMAT_VERSION,
            )
        with self._write_lock:
            self.lineage = content.get("Lineage", self.lineage)
            self._serial = int(content.get("Serial", 0))
            self._records = OrderedDict(
                (key, StateRecord.from_dict(definition))
                for key, definition in content.get("Resources", {}).items()
            )

    @property
    def serial(self) -> int:
        self._ensure_loaded()
        return self._serial

    def addresses(self) -> List[str]:
        """All the addresses with a record, sorted"""
        self._ensure_loaded()
        with self._write_lock:
            return sorted(self._records.keys())

    def get(self, address) -> Optional[StateRecord]:
        """
        Returns a copy of the record for the address, None if there is none.
        """
        self._ensure_loaded()
        with self._write_lock:
            record = self._records.get(address_key(address))
            return record.copy() if record else None

    def put(self, address, record: StateRecord) -> StateRecord:
        """
        Stores the record for the address. The record version is set from the previous one.

        :return: the record as stored
        """
        if not isinstance(record, StateRecord):
            raise TypeError("record must be", StateRecord, "Got", type(record))
        self._ensure_loaded()
        key = address_key(address)
        with self._write_lock:
            previous = self._records.get(key)
            stored = record.copy()
            stored.version = previous.version + 1 if previous else 1
            self._records[key] = stored
            self._serial += 1
            self._persist()
            LOG.debug(f"State - {key} stored (version {stored.version}, serial {self._serial})")
            return stored.copy()

    def delete(self, address) -> bool:
        """
        Removes the record of the address.

        :return: whether there was a record to remove
        """
        self._ensure_loaded()
        key = address_key(address)
        with self._write_lock:
            if key not in self._records:
                return False
            del self._records[key]
            self._serial += 1
            self._persist()
            LOG.debug(f"State - {key} removed (serial {self._serial})")
            return True

    def _acquire_lock(self, lock_info: dict) -> None:
        with self._write_lock:
            if self._lock_info is not None:
                raise LockHeldError(
                    f"State is locked by {self._lock_info['Owner']} since {self._lock_info['Created']}",
                    self._lock_info,
                )
            self._lock_info = lock_info

    def _release_lock(self, lock_info: dict) -> None:
        with self._write_lock:
            if self._lock_info and self._lock_info["ID"] == lock_info["ID"]:
                self._lock_info = None

    @property
    def lock_info(self) -> Optional[dict]:
        return self._lock_info

    def force_unlock(self) -> None:
        """
        Removes the lock regardless of its holder. Only to recover from an apply which died holding it.
        """
        if self._lock_info:
            LOG.warning(f"Forcing release of the state lock held by {self._lock_info['Owner']}")
            self._release_lock(self._lock_info)

    @contextmanager
    def lock(self, owner: str = None, operation: str = "apply"):
        """
        Holds the store lock for the duration of the with block.

        :raises LockHeldError: if the lock is already held
        """
        lock_info = new_lock_info(owner, operation)
        self._acquire_lock(lock_info)
        LOG.debug(f"State lock {lock_info['ID']} acquired by {lock_info['Owner']}")
        try:
            yield lock_info
        finally:
            self._release_lock(lock_info)
            LOG.debug(f"State lock {lock_info['ID']} released")


