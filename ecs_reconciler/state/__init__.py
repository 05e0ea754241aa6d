# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
State Store: holds the last known state of every resource applied.
"""

from ecs_reconciler.state.file_store import FileStateStore
from ecs_reconciler.state.s3_store import S3StateStore
from ecs_reconciler.state.state_record import StateRecord
from ecs_reconciler.state.state_store import StateStore

__all__ = ["FileStateStore", "S3StateStore", "StateRecord", "StateStore"]
