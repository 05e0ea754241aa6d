# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Loads the resources declarations from CloudFormation-like YAML or JSON documents.

.. code-block:: yaml

    Resources:
      TaskRole:
        Type: AWS::IAM::Role
        Properties:
          AssumeRolePolicyDocument: {...}
      Service:
        Type: AWS::ECS::Service
        Properties:
          TaskDefinition: !Ref TaskDefinition

The short form intrinsic functions (!Ref, !GetAtt, !Sub, !Join) are supported.
"""

from __future__ import annotations

import json
from os import path

import yaml
from cfn_flip import load as cfn_load
from jsonschema.exceptions import ValidationError

from ecs_reconciler.common import LOG
from ecs_reconciler.exceptions import InvalidDeclarationError
from ecs_reconciler.specs import validate_against


def _plain(value):
    """cfn_flip returns ODict and custom str types. Turns them into plain JSON types."""
    return json.loads(json.dumps(value))


def validate_declarations(content: dict) -> dict:
    """
    Validates the document against the declarations schema.

    :raises InvalidDeclarationError: if it does not match
    """
    try:
        validate_against("declarations", content)
    except ValidationError as error:
        location = ".".join(str(_part) for _part in error.absolute_path)
        raise InvalidDeclarationError(
            f"Invalid declarations at {location if location else '/'}: {error.message}"
        ) from error
    return content


def load_declarations(source: str) -> dict:
    """
    Loads and validates the declarations from a file path or from the document content.

    :param str source: path to a YAML/JSON file, or the YAML/JSON content itself
    :return: the document, with the resources under Resources
    :rtype: dict
    :raises InvalidDeclarationError: if the document cannot be parsed or is not valid
    """
    if "\n" not in source and path.isfile(source):
        with open(source, "r", encoding="utf-8") as declarations_fd:
            raw = declarations_fd.read()
        LOG.debug(f"Loading declarations from {source}")
    else:
        raw = source
    try:
        content, content_format = cfn_load(raw)
    except (ValueError, yaml.YAMLError) as error:
        raise InvalidDeclarationError(f"Failed to parse the declarations: {error}") from error
    if not isinstance(content, dict):
        raise InvalidDeclarationError(
            f"The declarations must be a mapping. Got {type(content).__name__}"
        )
    LOG.debug(f"Declarations parsed as {content_format}")
    return validate_declarations(_plain(content))
