# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Resource types used by an ECS service running on Fargate behind a load balancer:
IAM roles, log group, security groups, target group, task definition and the ECS service.

Immutable properties are the ones CloudFormation documents as "Update requires: Replacement".
Stable attributes are the identifiers, which an in-place update keeps.
"""

from troposphere import ec2, ecs, elasticloadbalancingv2, iam, logs, servicediscovery

from ecs_reconciler.resources.resource_types import ResourceTypeDescriptor

IAM_ROLE = ResourceTypeDescriptor(
    "AWS::IAM::Role",
    immutable_properties=("Path", "RoleName"),
    troposphere_class=iam.Role,
    stable_attributes=("Arn", "RoleId"),
)

LOG_GROUP = ResourceTypeDescriptor(
    "AWS::Logs::LogGroup",
    immutable_properties=("LogGroupName",),
    troposphere_class=logs.LogGroup,
    stable_attributes=("Arn",),
)

SECURITY_GROUP = ResourceTypeDescriptor(
    "AWS::EC2::SecurityGroup",
    immutable_properties=("GroupDescription", "GroupName", "VpcId"),
    troposphere_class=ec2.SecurityGroup,
    stable_attributes=("GroupId", "VpcId"),
)

SECURITY_GROUP_INGRESS = ResourceTypeDescriptor(
    "AWS::EC2::SecurityGroupIngress",
    updatable_properties=("Description",),
    troposphere_class=ec2.SecurityGroupIngress,
    stable_attributes=("Id",),
)

TARGET_GROUP = ResourceTypeDescriptor(
    "AWS::ElasticLoadBalancingV2::TargetGroup",
    immutable_properties=(
        "IpAddressType",
        "Name",
        "Port",
        "Protocol",
        "ProtocolVersion",
        "TargetType",
        "VpcId",
    ),
    externally_referenced=True,
    troposphere_class=elasticloadbalancingv2.TargetGroup,
    stable_attributes=("TargetGroupArn", "TargetGroupFullName", "TargetGroupName"),
)

TASK_DEFINITION = ResourceTypeDescriptor(
    "AWS::ECS::TaskDefinition",
    updatable_properties=("Tags",),
    externally_referenced=True,
    troposphere_class=ecs.TaskDefinition,
    stable_attributes=("TaskDefinitionArn",),
)

ECS_SERVICE = ResourceTypeDescriptor(
    "AWS::ECS::Service",
    immutable_properties=(
        "Cluster",
        "DeploymentController",
        "LaunchType",
        "Role",
        "SchedulingStrategy",
        "ServiceName",
    ),
    troposphere_class=ecs.Service,
    stable_attributes=("Name", "ServiceArn"),
)

CLOUDMAP_SERVICE = ResourceTypeDescriptor(
    "AWS::ServiceDiscovery::Service",
    immutable_properties=("HealthCheckCustomConfig", "Name", "NamespaceId"),
    troposphere_class=servicediscovery.Service,
    stable_attributes=("Arn", "Id", "Name"),
)

ECS_FARGATE_TYPES = (
    IAM_ROLE,
    LOG_GROUP,
    SECURITY_GROUP,
    SECURITY_GROUP_INGRESS,
    TARGET_GROUP,
    TASK_DEFINITION,
    ECS_SERVICE,
    CLOUDMAP_SERVICE,
)
