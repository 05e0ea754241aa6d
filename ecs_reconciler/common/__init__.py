# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Most commonly used functions shared across all modules.
"""

from __future__ import annotations

import json
import re
from copy import deepcopy

from ecs_reconciler.common.logging import LOG

NONALPHANUM = re.compile(r"([^a-zA-Z\d]+)")
UNKNOWN_VALUE = "(known after apply)"


class KnownAfterApply:
    """
    Marker for a value which can only be known once a dependency has been applied.
    It never compares equal to anything but itself, so any attribute holding it is a change.
    """

    def __repr__(self):
        return UNKNOWN_VALUE

    def __eq__(self, other):
        return isinstance(other, KnownAfterApply)

    def __hash__(self):
        return hash(UNKNOWN_VALUE)

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


UNKNOWN = KnownAfterApply()


def prune_none(value):
    """
    Removes None values from nested dicts and lists, which is how optional nested blocks are left out.

    :param value: the value to clean up
    :return: a copy of the value without None
    """
    if isinstance(value, dict):
        return {
            key: prune_none(item) for key, item in value.items() if item is not None
        }
    elif isinstance(value, (list, tuple)):
        return [prune_none(item) for item in value if item is not None]
    return deepcopy(value)


def contains_unknown(value) -> bool:
    """
    Whether the value, or any nested value, is only known after apply
    """
    if isinstance(value, KnownAfterApply):
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(item) for item in value)
    return False


def _json_default(value):
    if isinstance(value, KnownAfterApply):
        return UNKNOWN_VALUE
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value, indent: int = None) -> str:
    """
    Renders a value to JSON with sorted keys, so two equal values always render the same.
    """
    return json.dumps(value, sort_keys=True, indent=indent, default=_json_default)
