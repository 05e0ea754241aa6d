# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Renders plans as tables for review before applying them.
"""

import json

import yaml
from cfn_flip.yaml_dumper import LongCleanDumper
from tabulate import tabulate

from ecs_reconciler.common import canonical_json
from ecs_reconciler.plan.plan_operations import OperationKind, Plan


def _short(value, width: int = 60) -> str:
    rendered = value if isinstance(value, str) else canonical_json(value)
    if len(rendered) > width:
        return rendered[: width - 3] + "..."
    return rendered


def render_plan(plan: Plan, include_noop: bool = False, tablefmt: str = "rst") -> str:
    """
    Renders the plan operations, one row per changed property.

    :param Plan plan:
    :param bool include_noop: list the resources without changes too
    :param str tablefmt: tabulate table format
    :rtype: str
    """
    rows = []
    for operation in plan:
        if operation.kind == OperationKind.NOOP and not include_noop:
            continue
        action = operation.kind
        if operation.replacement_policy:
            action = f"{action} ({operation.replacement_policy})"
        elif operation.deposed_id:
            action = f"{action} (deposed {operation.deposed_id})"
        changes = operation.changes()
        if not changes:
            rows.append([str(operation.address), action, "", "", ""])
        for prop_name, change in changes.items():
            rows.append(
                [
                    str(operation.address),
                    action,
                    prop_name,
                    _short(change["Before"]) if change["Before"] is not None else "",
                    _short(change["After"]) if change["After"] is not None else "",
                ]
            )
            action = ""
    return tabulate(rows, ["Address", "Action", "Property", "Before", "After"], tablefmt=tablefmt)


def render_plan_yaml(plan: Plan) -> str:
    """
    Renders the plan operations as YAML, same content as Plan.to_json()
    """
    return yaml.dump(json.loads(plan.to_json()), Dumper=LongCleanDumper)
