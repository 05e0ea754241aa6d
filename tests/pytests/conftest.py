# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

import itertools
import threading
from copy import deepcopy

import boto3
from pytest import fixture

from ecs_reconciler.common.settings import ReconcilerSettings
from ecs_reconciler.providers import OperationStatus, ProgressEvent, ResourceProvider
from ecs_reconciler.reconciler import Reconciler
from ecs_reconciler.state import StateStore

TASK_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ecs-tasks.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}


class FakeProvider(ResourceProvider):
    """
    In memory provider. Errors to raise are queued per (operation, resource type).
    """

    idempotent = True

    def __init__(self, polls: int = 0):
        self.resources = {}
        self.calls = []
        self.errors = {}
        self.polls = polls
        self._pending = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.on_call = None

    def fail(self, operation: str, resource_type: str, errors: list):
        self.errors.setdefault((operation, resource_type), []).extend(errors)

    def _record(self, operation, resource_type, identifier=None):
        with self._lock:
            self.calls.append((operation, resource_type, identifier))
            queued = self.errors.get((operation, resource_type))
            error = queued.pop(0) if queued else None
        if self.on_call:
            self.on_call(operation, resource_type, identifier)
        if error is not None:
            raise error

    def calls_for(self, operation: str, resource_type: str = None) -> list:
        return [
            _call
            for _call in self.calls
            if _call[0] == operation and (resource_type is None or _call[1] == resource_type)
        ]

    def _event(self, operation, resource_type, identifier):
        if not self.polls:
            return ProgressEvent(
                operation,
                OperationStatus.SUCCESS,
                identifier=identifier,
                resource_type=resource_type,
            )
        token = f"token-{identifier}-{operation}"
        self._pending[token] = self.polls
        return ProgressEvent(
            operation,
            OperationStatus.IN_PROGRESS,
            request_token=token,
            identifier=identifier,
            resource_type=resource_type,
        )

    def create(self, resource_type, properties, client_token):
        self._record("create", resource_type)
        short_name = resource_type.split("::")[-1].lower()
        with self._lock:
            identifier = f"{short_name}-{next(self._counter)}"
            self.resources[identifier] = (resource_type, deepcopy(properties))
        return self._event("CREATE", resource_type, identifier)

    def read(self, resource_type, identifier):
        with self._lock:
            if identifier not in self.resources:
                return None
            properties = deepcopy(self.resources[identifier][1])
        properties.update(
            {
                "Arn": f"arn:aws:fake:eu-west-1:000000000000:{identifier}",
                "GroupId": identifier,
                "Id": identifier,
            }
        )
        return properties

    def update(self, resource_type, identifier, previous, properties, client_token):
        self._record("update", resource_type, identifier)
        with self._lock:
            self.resources[identifier] = (resource_type, deepcopy(properties))
        return self._event("UPDATE", resource_type, identifier)

    def delete(self, resource_type, identifier, client_token):
        self._record("delete", resource_type, identifier)
        with self._lock:
            self.resources.pop(identifier, None)
        return self._event("DELETE", resource_type, identifier)

    def status(self, event):
        self._pending[event.request_token] -= 1
        status = (
            OperationStatus.SUCCESS
            if self._pending[event.request_token] <= 0
            else OperationStatus.IN_PROGRESS
        )
        return ProgressEvent(
            event.operation,
            status,
            request_token=event.request_token,
            identifier=event.identifier,
            resource_type=event.resource_type,
        )


def service_declarations(port: int = 80, with_load_balancer: bool = True) -> dict:
    """
    ECS Fargate service with its IAM role, log group, security group, target group and task definition.
    """
    return {
        "Resources": {
            "LogGroup": {
                "Type": "AWS::Logs::LogGroup",
                "Properties": {"LogGroupName": "/ecs/app", "RetentionInDays": 7},
            },
            "TaskRole": {
                "Type": "AWS::IAM::Role",
                "Properties": {"AssumeRolePolicyDocument": TASK_ROLE_POLICY},
            },
            "ServiceSecurityGroup": {
                "Type": "AWS::EC2::SecurityGroup",
                "Properties": {"GroupDescription": "app", "VpcId": "vpc-0123"},
            },
            "TargetGroup": {
                "Type": "AWS::ElasticLoadBalancingV2::TargetGroup",
                "Properties": {
                    "Port": port,
                    "Protocol": "HTTP",
                    "TargetType": "ip",
                    "VpcId": "vpc-0123",
                },
            },
            "TaskDefinition": {
                "Type": "AWS::ECS::TaskDefinition",
                "Properties": {
                    "Family": "app",
                    "Cpu": "256",
                    "Memory": "512",
                    "NetworkMode": "awsvpc",
                    "RequiresCompatibilities": ["FARGATE"],
                    "TaskRoleArn": {"Fn::GetAtt": ["TaskRole", "Arn"]},
                    "ContainerDefinitions": [
                        {
                            "Name": "app",
                            "Image": "nginx",
                            "PortMappings": [{"ContainerPort": port}],
                            "LogConfiguration": {
                                "LogDriver": "awslogs",
                                "Options": {
                                    "awslogs-group": {"Ref": "LogGroup"},
                                    "awslogs-region": {"Ref": "AWS::Region"},
                                },
                            },
                        }
                    ],
                },
            },
            "Service": {
                "Type": "AWS::ECS::Service",
                "Properties": {
                    "Cluster": "default",
                    "LaunchType": "FARGATE",
                    "DesiredCount": 1,
                    "TaskDefinition": {"Ref": "TaskDefinition"},
                    "LoadBalancers": [
                        {
                            "ContainerName": "app",
                            "ContainerPort": port,
                            "TargetGroupArn": {"Ref": "TargetGroup"},
                        }
                    ]
                    if with_load_balancer
                    else None,
                    "NetworkConfiguration": {
                        "AwsvpcConfiguration": {
                            "Subnets": ["subnet-0123"],
                            "SecurityGroups": [
                                {"Fn::GetAtt": ["ServiceSecurityGroup", "GroupId"]}
                            ],
                        }
                    },
                },
            },
        }
    }


@fixture()
def session():
    return boto3.session.Session(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        region_name="eu-west-1",
    )


@fixture()
def settings(session):
    return ReconcilerSettings(
        session=session,
        **{
            ReconcilerSettings.backoff_base_arg: 0,
            ReconcilerSettings.poll_interval_arg: 0,
            ReconcilerSettings.poll_max_interval_arg: 0,
        },
    )


@fixture()
def provider():
    return FakeProvider()


@fixture()
def store():
    return StateStore()


@fixture()
def sleeps():
    return []


@fixture()
def reconciler(settings, provider, store, sleeps):
    return Reconciler(settings, provider=provider, store=store, sleep=sleeps.append)


@fixture()
def declarations():
    return service_declarations()


@fixture()
def make_declarations():
    return service_declarations


@fixture()
def make_provider():
    return FakeProvider
