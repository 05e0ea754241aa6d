#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

import jsonschema
from referencing.jsonschema import EMPTY_REGISTRY as _EMPTY_REGISTRY

from ecs_reconciler.specs._core import _schemas, load_spec

REGISTRY = (_schemas() @ _EMPTY_REGISTRY).crawl()


def validate_against(spec_name: str, content) -> None:
    """
    Validates the content against the named specification.

    :raises jsonschema.ValidationError: if the content is invalid
    """
    schema = load_spec(spec_name)
    validator_class = jsonschema.validators.validator_for(schema)
    validator_class(schema, registry=REGISTRY).validate(content)


__all__ = ["REGISTRY", "load_spec", "validate_against"]
