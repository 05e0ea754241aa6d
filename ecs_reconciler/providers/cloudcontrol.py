# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Provider using the AWS Cloud Control API, which exposes the same create/read/update/delete calls for all the
CloudFormation resource types.
"""

from __future__ import annotations

import json
import threading
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from ecs_reconciler.common import LOG
from ecs_reconciler.exceptions import PermanentFailure, TransientProviderError
from ecs_reconciler.providers.provider import (
    NOT_FOUND_ERROR_CODES,
    OperationStatus,
    ProgressEvent,
    ProviderConfig,
    ResourceProvider,
    error_from_code,
)


def _escape_pointer(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def json_patch(previous: dict, properties: dict) -> list:
    """
    JSON Patch (RFC 6902) operations turning the previous properties into the new ones, at the top level.
    """
    patch = []
    for key in sorted(set(previous) | set(properties)):
        pointer = f"/{_escape_pointer(key)}"
        if key not in properties:
            patch.append({"op": "remove", "path": pointer})
        elif key not in previous:
            patch.append({"op": "add", "path": pointer, "value": properties[key]})
        elif previous[key] != properties[key]:
            patch.append({"op": "replace", "path": pointer, "value": properties[key]})
    return patch


def client_error(error: ClientError, context: str):
    code = error.response["Error"]["Code"]
    message = error.response["Error"].get("Message", "")
    return error_from_code(code, f"{context}: {code} - {message}")


def botocore_error(error: BotoCoreError, context: str):
    """
    Connection failures and timeouts are transient, other client side errors are not.
    """
    if isinstance(error, (BotoConnectionError, HTTPClientError)):
        return TransientProviderError(f"{context}: {error}", error.__class__.__name__)
    return PermanentFailure(f"{context}: {error}", error.__class__.__name__)


class CloudControlProvider(ResourceProvider):
    """
    :ivar ProviderConfig config:
    """

    idempotent = True

    def __init__(self, config: ProviderConfig):
        self.config = config
        self._client = None
        self._client_lock = threading.Lock()

    @property
    def client(self):
        with self._client_lock:
            if self._client is None:
                self._client = self.config.client("cloudcontrol")
            return self._client

    def create(self, resource_type: str, properties: dict, client_token: str) -> ProgressEvent:
        LOG.debug(f"cloudcontrol - create {resource_type}")
        try:
            create_r = self.client.create_resource(
                TypeName=resource_type,
                DesiredState=json.dumps(properties),
                ClientToken=client_token,
            )
        except ClientError as error:
            raise client_error(error, f"Failed to create {resource_type}") from error
        except BotoCoreError as error:
            raise botocore_error(error, f"Failed to create {resource_type}") from error
        return ProgressEvent.from_dict(create_r["ProgressEvent"])

    def read(self, resource_type: str, identifier: str) -> Optional[dict]:
        try:
            resource_r = self.client.get_resource(
                TypeName=resource_type, Identifier=identifier
            )
        except ClientError as error:
            if error.response["Error"]["Code"] in NOT_FOUND_ERROR_CODES:
                return None
            raise client_error(
                error, f"Failed to read {resource_type} {identifier}"
            ) from error
        except BotoCoreError as error:
            raise botocore_error(
                error, f"Failed to read {resource_type} {identifier}"
            ) from error
        return json.loads(resource_r["ResourceDescription"]["Properties"])

    def update(
        self,
        resource_type: str,
        identifier: str,
        previous: dict,
        properties: dict,
        client_token: str,
    ) -> ProgressEvent:
        patch = json_patch(previous, properties)
        if not patch:
            return ProgressEvent(
                "UPDATE",
                OperationStatus.SUCCESS,
                identifier=identifier,
                resource_type=resource_type,
            )
        LOG.debug(f"cloudcontrol - update {resource_type} {identifier}: {patch}")
        try:
            update_r = self.client.update_resource(
                TypeName=resource_type,
                Identifier=identifier,
                PatchDocument=json.dumps(patch),
                ClientToken=client_token,
            )
        except ClientError as error:
            raise client_error(
                error, f"Failed to update {resource_type} {identifier}"
            ) from error
        except BotoCoreError as error:
            raise botocore_error(
                error, f"Failed to update {resource_type} {identifier}"
            ) from error
        return ProgressEvent.from_dict(update_r["ProgressEvent"])

    def delete(self, resource_type: str, identifier: str, client_token: str) -> ProgressEvent:
        LOG.debug(f"cloudcontrol - delete {resource_type} {identifier}")
        try:
            delete_r = self.client.delete_resource(
                TypeName=resource_type, Identifier=identifier, ClientToken=client_token
            )
        except ClientError as error:
            if error.response["Error"]["Code"] in NOT_FOUND_ERROR_CODES:
                LOG.warning(f"{resource_type} {identifier} already deleted")
                return ProgressEvent(
                    "DELETE",
                    OperationStatus.SUCCESS,
                    identifier=identifier,
                    resource_type=resource_type,
                )
            raise client_error(
                error, f"Failed to delete {resource_type} {identifier}"
            ) from error
        except BotoCoreError as error:
            raise botocore_error(
                error, f"Failed to delete {resource_type} {identifier}"
            ) from error
        return ProgressEvent.from_dict(delete_r["ProgressEvent"])

    def status(self, event: ProgressEvent) -> ProgressEvent:
        if not event.request_token:
            return event
        try:
            status_r = self.client.get_resource_request_status(
                RequestToken=event.request_token
            )
        except ClientError as error:
            raise client_error(
                error, f"Failed to get status of request {event.request_token}"
            ) from error
        except BotoCoreError as error:
            raise botocore_error(
                error, f"Failed to get status of request {event.request_token}"
            ) from error
        latest = ProgressEvent.from_dict(status_r["ProgressEvent"])
        if (
            latest.operation == "DELETE"
            and latest.failed
            and latest.error_code in NOT_FOUND_ERROR_CODES
        ):
            LOG.warning(f"{latest.resource_type} {latest.identifier} already deleted")
            latest.status = OperationStatus.SUCCESS
        if latest.identifier is None:
            latest.identifier = event.identifier
        return latest
