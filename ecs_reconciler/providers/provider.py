# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
The provider boundary: the API which creates, reads, updates and deletes the resources.

Write calls are asynchronous. They return a ProgressEvent which the executor polls with status() until the
resource is stable.
"""

from __future__ import annotations

from typing import Optional

from compose_x_common.compose_x_common import set_else_none

from ecs_reconciler.exceptions import (
    ImmutableAttributeConflict,
    PermanentFailure,
    ProviderError,
    TransientProviderError,
)


class OperationStatus:
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCEL_IN_PROGRESS = "CANCEL_IN_PROGRESS"
    CANCEL_COMPLETE = "CANCEL_COMPLETE"

    IN_FLIGHT = (PENDING, IN_PROGRESS, CANCEL_IN_PROGRESS)


TRANSIENT_ERROR_CODES = [
    "Throttling",
    "ThrottlingException",
    "ServiceInternalError",
    "ServiceInternalErrorException",
    "InternalFailure",
    "HandlerInternalFailureException",
    "NetworkFailure",
    "NetworkFailureException",
    "ServiceTimeout",
    "ResourceConflict",
    "ConcurrentOperationException",
    "ConcurrentModificationException",
    "RequestLimitExceeded",
]
NOT_UPDATABLE_ERROR_CODES = ["NotUpdatable", "NotUpdatableException"]
NOT_FOUND_ERROR_CODES = ["NotFound", "ResourceNotFoundException"]


def error_from_code(error_code: Optional[str], message: str) -> ProviderError:
    """
    Maps a provider error code to the matching exception.
    """
    if error_code in TRANSIENT_ERROR_CODES:
        return TransientProviderError(message, error_code)
    if error_code in NOT_UPDATABLE_ERROR_CODES:
        return ImmutableAttributeConflict(message)
    return PermanentFailure(message, error_code)


class ProgressEvent:
    """
    Progress of a provider write request.

    :ivar str operation: CREATE, UPDATE or DELETE
    :ivar str status: one of OperationStatus
    :ivar str request_token: token to poll the request status with
    :ivar str identifier: the resource identifier, once known
    :ivar str error_code:
    :ivar str status_message:
    :ivar str resource_type:
    """

    def __init__(
        self,
        operation: str,
        status: str,
        request_token: str = None,
        identifier: str = None,
        error_code: str = None,
        status_message: str = None,
        resource_type: str = None,
    ):
        self.operation = operation
        self.status = status
        self.request_token = request_token
        self.identifier = identifier
        self.error_code = error_code
        self.status_message = status_message
        self.resource_type = resource_type

    def __repr__(self):
        return f"ProgressEvent({self.operation} {self.resource_type} {self.identifier} {self.status})"

    @property
    def in_flight(self) -> bool:
        return self.status in OperationStatus.IN_FLIGHT

    @property
    def failed(self) -> bool:
        return self.status in [OperationStatus.FAILED, OperationStatus.CANCEL_COMPLETE]

    @staticmethod
    def from_dict(definition: dict) -> ProgressEvent:
        """
        From the ProgressEvent returned by the Cloud Control API
        """
        return ProgressEvent(
            definition["Operation"],
            definition["OperationStatus"],
            request_token=set_else_none("RequestToken", definition),
            identifier=set_else_none("Identifier", definition),
            error_code=set_else_none("ErrorCode", definition),
            status_message=set_else_none("StatusMessage", definition),
            resource_type=set_else_none("TypeName", definition),
        )

    def to_error(self) -> ProviderError:
        return error_from_code(
            self.error_code,
            f"{self.operation} {self.resource_type} {self.identifier or ''} failed: "
            f"{self.error_code} - {self.status_message}",
        )


class ProviderConfig:
    """
    Settings for the provider clients. Passed explicitly to the provider, no global client state.

    :ivar boto3.session.Session session:
    :ivar str region_name:
    :ivar botocore.config.Config client_config:
    """

    def __init__(self, session, region_name: str = None, client_config=None):
        self.session = session
        self.region_name = region_name if region_name else session.region_name
        self.client_config = client_config

    def client(self, service_name: str):
        return self.session.client(
            service_name, region_name=self.region_name, config=self.client_config
        )


class ResourceProvider:
    """
    Base class for providers.

    :cvar bool idempotent: whether write calls are made idempotent with client tokens. When not, the executor
        reads the resource before retrying a failed write.
    """

    idempotent = False

    def create(self, resource_type: str, properties: dict, client_token: str) -> ProgressEvent:
        raise NotImplementedError

    def read(self, resource_type: str, identifier: str) -> Optional[dict]:
        """
        :return: the resource attributes, None if the resource does not exist
        """
        raise NotImplementedError

    def update(
        self,
        resource_type: str,
        identifier: str,
        previous: dict,
        properties: dict,
        client_token: str,
    ) -> ProgressEvent:
        raise NotImplementedError

    def delete(self, resource_type: str, identifier: str, client_token: str) -> ProgressEvent:
        raise NotImplementedError

    def status(self, event: ProgressEvent) -> ProgressEvent:
        """Returns the latest progress of the request"""
        raise NotImplementedError
