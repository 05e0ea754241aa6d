# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module for the ReconcilerSettings class
"""

from __future__ import annotations

from copy import deepcopy

import boto3
import yaml
from compose_x_common.compose_x_common import keyisset, set_else_none

try:
    from yaml import CSafeLoader as Loader
except ImportError:
    from yaml import SafeLoader as Loader

from ecs_reconciler.common.logging import LOG, set_log_level
from ecs_reconciler.providers.provider import ProviderConfig
from ecs_reconciler.specs import validate_against
from ecs_reconciler.state import FileStateStore, S3StateStore, StateStore


class ReconcilerSettings:
    """
    Class to handle the settings of a plan/apply execution.

    :ivar boto3.session.Session session: session used for the provider and S3 state API calls
    :ivar str aws_region: region of the provider API calls
    :ivar int concurrency: maximum number of steps running at the same time within a batch
    :ivar int max_attempts: maximum number of attempts of a step failing with transient errors
    :ivar float backoff_base: seconds to wait after the first failed attempt, doubled after each
    :ivar float backoff_max: maximum seconds to wait between two attempts
    :ivar float poll_interval: seconds between the first two status polls of a write request
    :ivar float poll_max_interval: maximum seconds between two status polls
    :ivar float poll_timeout: seconds after which a resource not yet stable fails the step
    :ivar bool fail_fast: stop applying the rest of the plan after a failure
    """

    region_arg = "RegionName"
    profile_arg = "ProfileName"
    concurrency_arg = "Concurrency"
    max_attempts_arg = "MaxAttempts"
    backoff_base_arg = "BackoffBase"
    backoff_max_arg = "BackoffMax"
    poll_interval_arg = "PollInterval"
    poll_max_interval_arg = "PollMaxInterval"
    poll_timeout_arg = "PollTimeout"
    fail_fast_arg = "FailFast"
    state_backend_arg = "StateBackend"
    state_path_arg = "StatePath"
    state_bucket_arg = "StateBucket"
    state_key_arg = "StateKey"
    log_level_arg = "LogLevel"
    pseudo_parameters_arg = "PseudoParameters"

    default_concurrency = 4
    default_max_attempts = 5
    default_backoff_base = 1.0
    default_backoff_max = 30.0
    default_poll_interval = 5.0
    default_poll_max_interval = 30.0
    default_poll_timeout = 1800.0
    default_state_backend = "memory"
    default_state_path = "ecs-reconciler.state.json"
    default_state_key = "ecs-reconciler/state.json"

    def __init__(self, session=None, **kwargs):
        """
        Validates the settings and sets defaults.

        :param boto3.session.Session session: override the session built from ProfileName/RegionName
        """
        validate_against("settings", kwargs)
        self.__args = deepcopy(kwargs)
        self.session = session
        if self.session is None:
            self.session = boto3.session.Session(
                profile_name=set_else_none(self.profile_arg, kwargs),
                region_name=set_else_none(self.region_arg, kwargs),
            )
        self.aws_region = set_else_none(
            self.region_arg, kwargs, alt_value=self.session.region_name
        )
        self.concurrency = set_else_none(
            self.concurrency_arg, kwargs, alt_value=self.default_concurrency
        )
        self.max_attempts = set_else_none(
            self.max_attempts_arg, kwargs, alt_value=self.default_max_attempts
        )
        self.backoff_base = self._number(self.backoff_base_arg, self.default_backoff_base)
        self.backoff_max = self._number(self.backoff_max_arg, self.default_backoff_max)
        self.poll_interval = self._number(
            self.poll_interval_arg, self.default_poll_interval
        )
        self.poll_max_interval = self._number(
            self.poll_max_interval_arg, self.default_poll_max_interval
        )
        self.poll_timeout = self._number(self.poll_timeout_arg, self.default_poll_timeout)
        self.fail_fast = keyisset(self.fail_fast_arg, kwargs)
        self.state_backend = set_else_none(
            self.state_backend_arg, kwargs, alt_value=self.default_state_backend
        )
        self.state_path = set_else_none(
            self.state_path_arg, kwargs, alt_value=self.default_state_path
        )
        self.state_bucket = set_else_none(self.state_bucket_arg, kwargs)
        self.state_key = set_else_none(
            self.state_key_arg, kwargs, alt_value=self.default_state_key
        )
        if self.state_backend == "s3" and not self.state_bucket:
            raise ValueError(
                f"{self.state_bucket_arg} must be set to use the s3 state backend"
            )
        if keyisset(self.log_level_arg, kwargs):
            set_log_level(kwargs[self.log_level_arg])

    def __repr__(self):
        return (
            f"ReconcilerSettings(region={self.aws_region}, concurrency={self.concurrency}, "
            f"state={self.state_backend})"
        )

    def _number(self, key: str, default: float) -> float:
        if key in self.__args and self.__args[key] is not None:
            return float(self.__args[key])
        return default

    @classmethod
    def from_file(cls, file_path: str, session=None) -> ReconcilerSettings:
        """
        Loads the settings from a YAML (or JSON) file.
        """
        with open(file_path, "r", encoding="utf-8") as settings_fd:
            content = yaml.load(settings_fd.read(), Loader=Loader)
        if content is None:
            content = {}
        if not isinstance(content, dict):
            raise TypeError(f"{file_path} - settings must be a mapping. Got", type(content))
        LOG.debug(f"Settings loaded from {file_path}")
        return cls(session=session, **content)

    @property
    def pseudo_parameters(self) -> dict:
        """
        Values of the AWS:: pseudo parameters used in Ref and Fn::Sub
        """
        parameters = {}
        if self.aws_region:
            parameters["AWS::Region"] = self.aws_region
            parameters["AWS::Partition"] = self.session.get_partition_for_region(
                self.aws_region
            )
            parameters["AWS::URLSuffix"] = (
                "amazonaws.com.cn"
                if parameters["AWS::Partition"] == "aws-cn"
                else "amazonaws.com"
            )
        parameters.update(
            set_else_none(self.pseudo_parameters_arg, self.__args, alt_value={})
        )
        return parameters

    @property
    def provider_config(self) -> ProviderConfig:
        return ProviderConfig(self.session, region_name=self.aws_region)

    def state_store(self) -> StateStore:
        """
        Returns the StateStore for the configured backend.
        """
        if self.state_backend == "file":
            return FileStateStore(self.state_path)
        elif self.state_backend == "s3":
            return S3StateStore(self.state_bucket, self.state_key, self.session)
        return StateStore()
