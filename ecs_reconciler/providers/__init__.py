# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Providers: the APIs applying the steps.
"""

from ecs_reconciler.providers.cloudcontrol import CloudControlProvider
from ecs_reconciler.providers.provider import (
    OperationStatus,
    ProgressEvent,
    ProviderConfig,
    ResourceProvider,
)

__all__ = [
    "CloudControlProvider",
    "OperationStatus",
    "ProgressEvent",
    "ProviderConfig",
    "ResourceProvider",
]
