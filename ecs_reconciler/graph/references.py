# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module to find and resolve references between resources.

References use the CloudFormation intrinsic functions syntax

* ``{"Ref": "Name"}`` the identifier of the resource
* ``{"Fn::GetAtt": ["Name", "Attribute"]}`` or ``{"Fn::GetAtt": "Name.Attribute"}`` an output attribute
* ``{"Fn::Sub": "arn:${AWS::Partition}:${Name.Attribute}"}`` string interpolation
* ``{"Fn::Join": ["", [...]]}``

Names starting with ``AWS::`` are pseudo parameters, not resources.
"""

from __future__ import annotations

import re
from typing import Callable, List, Optional, Tuple

from ecs_reconciler.common import UNKNOWN, KnownAfterApply
from ecs_reconciler.exceptions import InvalidDeclarationError

REF = "Ref"
GET_ATT = "Fn::GetAtt"
SUB = "Fn::Sub"
JOIN = "Fn::Join"
INTRINSICS = (REF, GET_ATT, SUB, JOIN)
PSEUDO_PREFIX = "AWS::"
SUB_VARIABLE_RE = re.compile(r"\$\{([^}!][^}]*)\}")
SUB_LITERAL_RE = re.compile(r"\$\{!([^}]*)\}")


class Reference:
    """
    A reference from one attribute to another resource.

    :ivar str target: logical name of the resource referenced
    :ivar str attribute: name of the output attribute. None means the resource identifier (Ref)
    :ivar str path: where in the properties the reference was found, i.e. LoadBalancers.0.TargetGroupArn
    """

    __slots__ = ("target", "attribute", "path")

    def __init__(self, target: str, attribute: Optional[str], path: str):
        self.target = target
        self.attribute = attribute
        self.path = path

    def __repr__(self):
        if self.attribute:
            return f"{self.path} -> {self.target}.{self.attribute}"
        return f"{self.path} -> {self.target}"


def is_intrinsic(value) -> bool:
    return isinstance(value, dict) and len(value) == 1 and next(iter(value)) in INTRINSICS


def split_get_att(value, path: str = "") -> Tuple[str, str]:
    if isinstance(value, str) and "." in value:
        target, attribute = value.split(".", 1)
        return target, attribute
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return value[0], value[1]
    raise InvalidDeclarationError(
        f"{path} - Fn::GetAtt must be [Name, Attribute] or Name.Attribute. Got", value
    )


def split_sub(value, path: str = "") -> Tuple[str, dict]:
    if isinstance(value, str):
        return value, {}
    if (
        isinstance(value, (list, tuple))
        and len(value) == 2
        and isinstance(value[0], str)
        and isinstance(value[1], dict)
    ):
        return value[0], value[1]
    raise InvalidDeclarationError(
        f"{path} - Fn::Sub must be a string or [String, {{Variables}}]. Got", value
    )


def _sub_variable_reference(variable: str) -> Tuple[str, Optional[str]]:
    if "." in variable:
        target, attribute = variable.split(".", 1)
        return target, attribute
    return variable, None


def _join_path(path: str, key) -> str:
    return f"{path}.{key}" if path else str(key)


def find_references(value, path: str = "") -> List[Reference]:
    """
    Walks through a value and returns all the references to other resources it holds.

    :param value: the properties, or any nested value
    :param str path: path of the value in the properties
    :rtype: list[Reference]
    """
    references = []
    if is_intrinsic(value):
        function, args = next(iter(value.items()))
        if function == REF:
            if not isinstance(args, str):
                raise InvalidDeclarationError(f"{path} - Ref must be a string. Got", args)
            if not args.startswith(PSEUDO_PREFIX):
                references.append(Reference(args, None, path))
        elif function == GET_ATT:
            target, attribute = split_get_att(args, path)
            references.append(Reference(target, attribute, path))
        elif function == SUB:
            template, variables = split_sub(args, path)
            for var_name, var_value in variables.items():
                references += find_references(var_value, path)
            for variable in SUB_VARIABLE_RE.findall(template):
                if variable.startswith(PSEUDO_PREFIX) or variable in variables:
                    continue
                target, attribute = _sub_variable_reference(variable)
                references.append(Reference(target, attribute, path))
        elif function == JOIN:
            references += find_references(args, path)
    elif isinstance(value, dict):
        for key, item in value.items():
            references += find_references(item, _join_path(path, key))
    elif isinstance(value, (list, tuple)):
        for count, item in enumerate(value):
            references += find_references(item, _join_path(path, count))
    return references


def _stringify(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve(
    value,
    lookup: Callable[[str, Optional[str]], object],
    pseudo_parameters: dict = None,
):
    """
    Replaces the references with their values.

    :param value: the value to resolve
    :param lookup: function taking (logical name, attribute) and returning the value. Returns UNKNOWN when
        the value is not known yet.
    :param dict pseudo_parameters: values of AWS:: pseudo parameters, i.e. AWS::Region.
        Unknown pseudo parameters are left as is.
    :return: the resolved value, or UNKNOWN if any part of a string/function depends on an unknown value.
    """
    if pseudo_parameters is None:
        pseudo_parameters = {}
    if is_intrinsic(value):
        function, args = next(iter(value.items()))
        if function == REF:
            if args.startswith(PSEUDO_PREFIX):
                return pseudo_parameters.get(args, value)
            return lookup(args, None)
        elif function == GET_ATT:
            target, attribute = split_get_att(args)
            return lookup(target, attribute)
        elif function == SUB:
            return _resolve_sub(args, lookup, pseudo_parameters)
        elif function == JOIN:
            delimiter, items = args
            parts = resolve(items, lookup, pseudo_parameters)
            if isinstance(parts, KnownAfterApply) or any(
                isinstance(_part, KnownAfterApply) for _part in parts
            ):
                return UNKNOWN
            return delimiter.join(_stringify(_part) for _part in parts)
    elif isinstance(value, dict):
        return {
            key: resolve(item, lookup, pseudo_parameters) for key, item in value.items()
        }
    elif isinstance(value, (list, tuple)):
        return [resolve(item, lookup, pseudo_parameters) for item in value]
    return value


def _resolve_sub(args, lookup, pseudo_parameters):
    template, variables = split_sub(args)
    resolved_vars = {
        name: resolve(var_value, lookup, pseudo_parameters)
        for name, var_value in variables.items()
    }
    unknown = []

    def replace_var(match):
        variable = match.group(1)
        if variable in resolved_vars:
            result = resolved_vars[variable]
        elif variable.startswith(PSEUDO_PREFIX):
            if variable not in pseudo_parameters:
                return match.group(0)
            result = pseudo_parameters[variable]
        else:
            result = lookup(*_sub_variable_reference(variable))
        if isinstance(result, KnownAfterApply):
            unknown.append(variable)
            return ""
        return _stringify(result)

    rendered = SUB_VARIABLE_RE.sub(replace_var, template)
    if unknown:
        return UNKNOWN
    return SUB_LITERAL_RE.sub(r"${\1}", rendered)
