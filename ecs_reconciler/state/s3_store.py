# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
StateStore persisted as a JSON object in S3.

The lock is a second object, written only if it does not exist yet (conditional write), so two applies
cannot both get it.
"""

from __future__ import annotations

import json

from botocore.exceptions import ClientError

from ecs_reconciler.common import LOG, canonical_json
from ecs_reconciler.exceptions import LockHeldError
from ecs_reconciler.state.state_store import StateStore

JSON_MIME = "application/json"
LOCK_CONFLICT_CODES = ["PreconditionFailed", "ConditionalRequestConflict"]


class S3StateStore(StateStore):
    """
    :ivar str bucket_name: name of the bucket holding the state
    :ivar str key: key of the state object
    :ivar boto3.session.Session session: session to create the S3 client with
    """

    backend = "s3"

    def __init__(self, bucket_name: str, key: str, session):
        super().__init__()
        self.bucket_name = bucket_name
        self.key = key
        self.lock_key = f"{key}.lock"
        self.session = session
        self._client = None

    @property
    def client(self):
        if self._client is None:
            self._client = self.session.client("s3")
        return self._client

    def _load(self) -> None:
        try:
            object_r = self.client.get_object(Bucket=self.bucket_name, Key=self.key)
        except ClientError as error:
            if error.response["Error"]["Code"] in ["NoSuchKey", "404"]:
                LOG.debug(
                    f"No state at s3://{self.bucket_name}/{self.key}. Starting from an empty state"
                )
                return
            raise
        self.load_dict(json.loads(object_r["Body"].read()))

    def _persist(self) -> None:
        self.client.put_object(
            Bucket=self.bucket_name,
            Key=self.key,
            Body=canonical_json(self.to_dict(), indent=2).encode("utf-8"),
            ContentType=JSON_MIME,
            ServerSideEncryption="AES256",
        )

    def _read_lock_object(self):
        try:
            object_r = self.client.get_object(Bucket=self.bucket_name, Key=self.lock_key)
        except ClientError as error:
            LOG.debug(f"Could not read lock s3://{self.bucket_name}/{self.lock_key}: {error}")
            return None
        return json.loads(object_r["Body"].read())

    @property
    def lock_info(self):
        return self._read_lock_object()

    def _acquire_lock(self, lock_info: dict) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=self.lock_key,
                Body=json.dumps(lock_info).encode("utf-8"),
                ContentType=JSON_MIME,
                IfNoneMatch="*",
            )
        except ClientError as error:
            if error.response["Error"]["Code"] in LOCK_CONFLICT_CODES:
                holder = self._read_lock_object() or {}
                raise LockHeldError(
                    f"State s3://{self.bucket_name}/{self.key} is locked by "
                    f"{holder.get('Owner')} since {holder.get('Created')}",
                    holder,
                )
            raise
        self._lock_info = lock_info
        self._loaded = False
        try:
            self._ensure_loaded()
        except Exception:
            LOG.error("Failed to load the state, releasing the lock")
            self._release_lock(lock_info)
            raise

    def _release_lock(self, lock_info: dict) -> None:
        self.client.delete_object(Bucket=self.bucket_name, Key=self.lock_key)
        self._lock_info = None

    def force_unlock(self) -> None:
        LOG.warning(f"Forcing release of the state lock s3://{self.bucket_name}/{self.lock_key}")
        self.client.delete_object(Bucket=self.bucket_name, Key=self.lock_key)
        self._lock_info = None
