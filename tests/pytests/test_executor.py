# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

import itertools

from botocore.exceptions import EndpointConnectionError
from pytest import raises

from ecs_reconciler.common.settings import ReconcilerSettings
from ecs_reconciler.exceptions import (
    ImmutableAttributeConflict,
    LockHeldError,
    OperationTimeout,
    PermanentFailure,
    PlanConsumedError,
    StalePlanError,
    TransientProviderError,
)
from ecs_reconciler.executor import StepStatus
from ecs_reconciler.plan import OperationKind, StepKind
from ecs_reconciler.reconciler import Reconciler
from ecs_reconciler.state import StateRecord

SERVICE = "AWS::ECS::Service::Service"
TASK_DEFINITION = "AWS::ECS::TaskDefinition::TaskDefinition"
TARGET_GROUP = "AWS::ElasticLoadBalancingV2::TargetGroup::TargetGroup"
SECURITY_GROUP = "AWS::EC2::SecurityGroup::ServiceSecurityGroup"
LOG_GROUP = "AWS::Logs::LogGroup::LogGroup"
TASK_ROLE = "AWS::IAM::Role::TaskRole"

SINGLE_LOG_GROUP = {
    "Resources": {
        "LogGroup": {
            "Type": "AWS::Logs::LogGroup",
            "Properties": {"LogGroupName": "/ecs/app"},
        }
    }
}


def throttled(count: int) -> list:
    return [TransientProviderError("Rate exceeded", "Throttling") for _ in range(count)]


def test_apply_creates_all_resources(reconciler, provider, store, declarations):
    plan = reconciler.plan(declarations)
    result = reconciler.apply(plan)
    assert result.success
    assert len(result) == 6
    assert len(provider.calls_for("create")) == 6
    assert result.get(SERVICE).batch == 2
    assert result.get(TASK_DEFINITION).batch == 1
    service = store.get(SERVICE)
    task_definition = store.get(TASK_DEFINITION)
    assert service.attributes["TaskDefinition"] == task_definition.identifier
    assert (
        service.attributes["LoadBalancers"][0]["TargetGroupArn"]
        == store.get(TARGET_GROUP).identifier
    )
    assert service.attributes["NetworkConfiguration"]["AwsvpcConfiguration"][
        "SecurityGroups"
    ] == [store.get(SECURITY_GROUP).identifier]
    assert task_definition.attributes["TaskRoleArn"] == store.get(TASK_ROLE).outputs["Arn"]
    log_options = task_definition.attributes["ContainerDefinitions"][0][
        "LogConfiguration"
    ]["Options"]
    assert log_options["awslogs-region"] == "eu-west-1"
    assert log_options["awslogs-group"] == store.get(LOG_GROUP).identifier
    assert service.dependencies == sorted(
        [SECURITY_GROUP, TARGET_GROUP, TASK_DEFINITION]
    )
    assert service.version == 1


def test_apply_then_plan_is_noop(reconciler, provider, declarations):
    reconciler.apply(reconciler.plan(declarations))
    calls = len(provider.calls)
    plan = reconciler.plan(declarations)
    assert not plan.has_changes
    assert all(_op.kind == OperationKind.NOOP for _op in plan)
    result = reconciler.apply(plan)
    assert result.success
    assert len(result) == 0
    assert len(provider.calls) == calls


def test_plan_consumed_once(reconciler, declarations):
    reconciler.apply(reconciler.plan(declarations))
    plan = reconciler.plan(declarations)
    reconciler.apply(plan)
    with raises(PlanConsumedError):
        reconciler.apply(plan)


def test_stale_plan(reconciler, store, provider, declarations):
    plan = reconciler.plan(declarations)
    store.put("AWS::S3::Bucket::Other", StateRecord("other", "AWS::S3::Bucket"))
    with raises(StalePlanError):
        reconciler.apply(plan)
    assert not plan.consumed
    assert provider.calls == []


def test_lock_held_no_mutation(reconciler, store, provider, declarations):
    plan = reconciler.plan(declarations)
    with store.lock("someone@elsewhere"):
        with raises(LockHeldError) as error:
            reconciler.apply(plan)
        assert error.value.holder["Owner"] == "someone@elsewhere"
    assert provider.calls == []
    assert store.serial == 0
    assert store.addresses() == []
    assert not plan.consumed
    assert reconciler.apply(plan).success


def test_transient_errors_retried(reconciler, provider, store, sleeps, declarations):
    provider.fail("create", "AWS::ECS::Service", throttled(2))
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.success
    service_result = result.get(SERVICE)
    assert service_result.status == StepStatus.SUCCEEDED
    assert service_result.attempts == 3
    assert len(provider.calls_for("create", "AWS::ECS::Service")) == 3
    assert store.get(SERVICE).version == 1
    assert len(sleeps) == 2


def test_retry_backoff_is_exponential(session, provider, store, sleeps):
    settings = ReconcilerSettings(
        session=session,
        **{
            ReconcilerSettings.backoff_base_arg: 1,
            ReconcilerSettings.backoff_max_arg: 3,
            ReconcilerSettings.max_attempts_arg: 4,
        },
    )
    reconciler = Reconciler(settings, provider=provider, store=store, sleep=sleeps.append)
    provider.fail("create", "AWS::Logs::LogGroup", throttled(3))
    result = reconciler.apply(reconciler.plan(SINGLE_LOG_GROUP))
    assert result.success
    assert sleeps == [1, 2, 3]


def test_retries_exhausted(reconciler, provider, store, declarations):
    provider.fail("create", "AWS::ECS::TaskDefinition", throttled(5))
    result = reconciler.apply(reconciler.plan(declarations))
    assert not result.success
    failed = result.get(TASK_DEFINITION)
    assert failed.status == StepStatus.FAILED
    assert failed.attempts == 5
    assert isinstance(failed.error, PermanentFailure)
    assert result.get(SERVICE).status == StepStatus.SKIPPED
    assert store.get(TASK_DEFINITION) is None
    assert store.get(SERVICE) is None
    assert store.get(TARGET_GROUP) is not None


def test_permanent_failure_not_retried(reconciler, provider, declarations):
    provider.fail(
        "create", "AWS::IAM::Role", [PermanentFailure("Access denied", "AccessDenied")]
    )
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.get(TASK_ROLE).attempts == 1
    assert result.get(TASK_DEFINITION).status == StepStatus.SKIPPED
    assert result.get(SERVICE).status == StepStatus.SKIPPED
    assert result.get(LOG_GROUP).status == StepStatus.SUCCEEDED
    assert [_res.status for _res in result.failed] == [StepStatus.FAILED]
    assert len(result.skipped) == 2


def test_independent_steps_continue_after_failure(reconciler, provider, declarations):
    provider.fail(
        "create", "AWS::EC2::SecurityGroup", [PermanentFailure("Invalid VPC", "InvalidRequest")]
    )
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.get(SECURITY_GROUP).status == StepStatus.FAILED
    assert result.get(TASK_DEFINITION).status == StepStatus.SUCCEEDED
    assert result.get(SERVICE).status == StepStatus.SKIPPED
    assert not result.aborted


def test_fail_fast(session, provider, store, declarations):
    settings = ReconcilerSettings(
        session=session,
        **{
            ReconcilerSettings.fail_fast_arg: True,
            ReconcilerSettings.backoff_base_arg: 0,
        },
    )
    reconciler = Reconciler(settings, provider=provider, store=store, sleep=lambda _s: None)
    provider.fail(
        "create", "AWS::EC2::SecurityGroup", [PermanentFailure("Invalid VPC", "InvalidRequest")]
    )
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.aborted
    assert result.get(LOG_GROUP).status == StepStatus.SUCCEEDED
    assert result.get(TASK_DEFINITION).status == StepStatus.SKIPPED
    assert result.get(SERVICE).status == StepStatus.SKIPPED
    assert store.get(TASK_DEFINITION) is None


def test_cancel_between_batches(reconciler, provider, store, declarations):
    def cancel_on_task_definition(operation, resource_type, identifier):
        if resource_type == "AWS::ECS::TaskDefinition":
            reconciler.cancel()

    provider.on_call = cancel_on_task_definition
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.cancelled
    assert result.get(TASK_DEFINITION).status == StepStatus.SUCCEEDED
    assert result.get(SERVICE).status == StepStatus.CANCELLED
    assert store.get(TASK_DEFINITION) is not None
    assert store.get(SERVICE) is None
    assert not result.success


def test_poll_until_stable(session, store, sleeps, make_provider):
    settings = ReconcilerSettings(
        session=session,
        **{
            ReconcilerSettings.poll_interval_arg: 1,
            ReconcilerSettings.poll_max_interval_arg: 4,
        },
    )
    reconciler = Reconciler(
        settings, provider=make_provider(polls=2), store=store, sleep=sleeps.append
    )
    result = reconciler.apply(reconciler.plan(SINGLE_LOG_GROUP))
    assert result.success
    assert sleeps == [1, 2]
    assert store.get(LOG_GROUP).identifier == "loggroup-1"


def test_poll_timeout(session, store, make_provider):
    settings = ReconcilerSettings(
        session=session, **{ReconcilerSettings.poll_timeout_arg: 5}
    )
    ticks = itertools.count(0, 10)
    reconciler = Reconciler(
        settings,
        provider=make_provider(polls=3),
        store=store,
        sleep=lambda _s: None,
        clock=lambda: next(ticks),
    )
    result = reconciler.apply(reconciler.plan(SINGLE_LOG_GROUP))
    failed = result.get(LOG_GROUP)
    assert failed.status == StepStatus.FAILED
    assert isinstance(failed.error, OperationTimeout)
    assert failed.attempts == 1
    assert store.get(LOG_GROUP) is None


def test_non_idempotent_create_adopted(session, store, make_provider):
    settings = ReconcilerSettings(
        session=session, **{ReconcilerSettings.poll_interval_arg: 0}
    )
    provider = make_provider(polls=1)
    provider.idempotent = False
    provider.fail("status", "AWS::Logs::LogGroup", throttled(1))
    original_status = provider.status

    def status(event):
        provider._record("status", event.resource_type, event.identifier)
        return original_status(event)

    provider.status = status
    reconciler = Reconciler(settings, provider=provider, store=store, sleep=lambda _s: None)
    result = reconciler.apply(reconciler.plan(SINGLE_LOG_GROUP))
    assert result.success
    assert result.get(LOG_GROUP).attempts == 2
    assert len(provider.calls_for("create")) == 1
    assert store.get(LOG_GROUP).identifier == "loggroup-1"


def test_non_idempotent_destroy_already_gone(reconciler, provider, store):
    reconciler.apply(reconciler.plan(SINGLE_LOG_GROUP))
    identifier = store.get(LOG_GROUP).identifier
    provider.idempotent = False
    provider.resources.pop(identifier)
    provider.fail("delete", "AWS::Logs::LogGroup", throttled(1))
    result = reconciler.apply(reconciler.plan({"Resources": {}}))
    assert result.success
    assert result.get(LOG_GROUP, StepKind.DESTROY).attempts == 2
    assert len(provider.calls_for("delete")) == 1
    assert store.get(LOG_GROUP) is None


def test_create_before_destroy_replace(reconciler, provider, store, make_declarations):
    reconciler.apply(reconciler.plan(make_declarations(port=80)))
    old_target_group = store.get(TARGET_GROUP).identifier
    old_task_definition = store.get(TASK_DEFINITION).identifier

    plan = reconciler.plan(make_declarations(port=81))
    kinds = {str(_op.address): _op.kind for _op in plan}
    assert kinds[TARGET_GROUP] == OperationKind.REPLACE
    assert kinds[TASK_DEFINITION] == OperationKind.REPLACE
    assert kinds[SERVICE] == OperationKind.UPDATE
    assert kinds[LOG_GROUP] == OperationKind.NOOP

    result = reconciler.apply(plan)
    assert result.success
    assert result.get(TARGET_GROUP, StepKind.CREATE_NEW).batch == 0
    assert result.get(SERVICE, StepKind.UPDATE).batch == 1
    assert result.get(TARGET_GROUP, StepKind.DESTROY_OLD).batch == 2
    assert result.get(TASK_DEFINITION, StepKind.DESTROY_OLD).batch == 2

    target_group = store.get(TARGET_GROUP)
    assert target_group.identifier != old_target_group
    assert target_group.deposed == []
    assert old_target_group not in provider.resources
    assert old_task_definition not in provider.resources
    service = store.get(SERVICE)
    assert service.attributes["LoadBalancers"][0]["TargetGroupArn"] == target_group.identifier
    assert service.attributes["TaskDefinition"] == store.get(TASK_DEFINITION).identifier
    assert not reconciler.plan(make_declarations(port=81)).has_changes


def test_deposed_destroy_planned_after_failure(reconciler, provider, store, make_declarations):
    reconciler.apply(reconciler.plan(make_declarations(port=80)))
    old_target_group = store.get(TARGET_GROUP).identifier
    provider.fail(
        "delete",
        "AWS::ElasticLoadBalancingV2::TargetGroup",
        [PermanentFailure("Target group in use", "ResourceInUse")],
    )
    result = reconciler.apply(reconciler.plan(make_declarations(port=81)))
    assert result.get(TARGET_GROUP, StepKind.DESTROY_OLD).status == StepStatus.FAILED
    assert store.get(TARGET_GROUP).deposed == [old_target_group]

    plan = reconciler.plan(make_declarations(port=81))
    changes = plan.changes
    assert len(changes) == 1
    assert changes[0].kind == OperationKind.DESTROY
    assert changes[0].deposed_id == old_target_group
    assert reconciler.apply(plan).success
    assert store.get(TARGET_GROUP).deposed == []
    assert old_target_group not in provider.resources


def test_destroy_before_create_replace(reconciler, provider, store, make_declarations):
    reconciler.apply(reconciler.plan(make_declarations()))
    old_group = store.get(SECURITY_GROUP).identifier
    declarations = make_declarations()
    declarations["Resources"]["ServiceSecurityGroup"]["Properties"][
        "GroupDescription"
    ] = "app service"
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.success
    assert result.get(SECURITY_GROUP, StepKind.DESTROY_OLD).batch == 0
    assert result.get(SECURITY_GROUP, StepKind.CREATE_NEW).batch == 1
    assert result.get(SERVICE, StepKind.UPDATE).batch == 2
    new_group = store.get(SECURITY_GROUP)
    assert new_group.identifier != old_group
    assert new_group.deposed == []
    assert store.get(SERVICE).attributes["NetworkConfiguration"]["AwsvpcConfiguration"][
        "SecurityGroups"
    ] == [new_group.identifier]


def test_destroy_dependents_first(reconciler, store, make_declarations):
    reconciler.apply(reconciler.plan(make_declarations()))
    declarations = make_declarations()
    del declarations["Resources"]["Service"]
    del declarations["Resources"]["TaskDefinition"]
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.success
    assert result.get(SERVICE, StepKind.DESTROY).batch == 0
    assert result.get(TASK_DEFINITION, StepKind.DESTROY).batch == 1
    assert store.get(SERVICE) is None
    assert store.get(TASK_DEFINITION) is None
    assert store.get(TARGET_GROUP) is not None


def test_optional_load_balancer_block(reconciler, store, make_declarations):
    reconciler.apply(reconciler.plan(make_declarations(with_load_balancer=False)))
    service = store.get(SERVICE)
    assert "LoadBalancers" not in service.attributes
    assert TARGET_GROUP not in service.dependencies


def test_update_keeps_stable_attributes_known(reconciler, provider, store, make_declarations):
    reconciler.apply(reconciler.plan(make_declarations()))
    declarations = make_declarations()
    declarations["Resources"]["TaskRole"]["Properties"]["Description"] = "app task role"
    plan = reconciler.plan(declarations)
    assert {str(_op.address): _op.kind for _op in plan.changes} == {
        TASK_ROLE: OperationKind.UPDATE
    }
    assert reconciler.apply(plan).success
    assert len(provider.calls_for("update")) == 1
    assert provider.calls_for("delete") == []


def test_security_group_tags_update_keeps_ingress(reconciler, provider, store):
    declarations = {
        "Resources": {
            "AppSecurityGroup": {
                "Type": "AWS::EC2::SecurityGroup",
                "Properties": {"GroupDescription": "app", "VpcId": "vpc-0123"},
            },
            "AppIngress": {
                "Type": "AWS::EC2::SecurityGroupIngress",
                "Properties": {
                    "GroupId": {"Fn::GetAtt": ["AppSecurityGroup", "GroupId"]},
                    "IpProtocol": "tcp",
                    "FromPort": 80,
                    "ToPort": 80,
                    "CidrIp": "10.0.0.0/16",
                },
            },
        }
    }
    reconciler.apply(reconciler.plan(declarations))
    ingress = store.get("AWS::EC2::SecurityGroupIngress::AppIngress").identifier
    declarations["Resources"]["AppSecurityGroup"]["Properties"]["Tags"] = [
        {"Key": "Name", "Value": "app"}
    ]
    plan = reconciler.plan(declarations)
    assert [(_op.address.name, _op.kind) for _op in plan.changes] == [
        ("AppSecurityGroup", OperationKind.UPDATE)
    ]
    assert reconciler.apply(plan).success
    assert provider.calls_for("delete") == []
    assert len(provider.calls_for("create")) == 2
    assert store.get("AWS::EC2::SecurityGroupIngress::AppIngress").identifier == ingress


def test_update_without_change_once_resolved(reconciler, provider, store, make_declarations):
    def with_settings(description: str) -> dict:
        declarations = make_declarations()
        declarations["Resources"]["AppSettings"] = {
            "Type": "Custom::AppSettings",
            "Properties": {"Family": "app", "Description": description},
        }
        declarations["Resources"]["TaskDefinition"]["Properties"]["Family"] = {
            "Fn::GetAtt": ["AppSettings", "Family"]
        }
        return declarations

    reconciler.apply(reconciler.plan(with_settings("first")))
    declarations = with_settings("second")
    plan = reconciler.plan(declarations)
    kinds = {str(_op.address): _op.kind for _op in plan.changes}
    assert kinds == {
        "Custom::AppSettings::AppSettings": OperationKind.UPDATE,
        TASK_DEFINITION: OperationKind.REPLACE,
        SERVICE: OperationKind.UPDATE,
    }
    task_definition = store.get(TASK_DEFINITION).identifier
    result = reconciler.apply(plan)
    assert result.success
    assert len(provider.calls_for("update", "Custom::AppSettings")) == 1
    assert len(provider.calls_for("create")) == 7
    assert provider.calls_for("delete") == []
    assert provider.calls_for("update", "AWS::ECS::Service") == []
    assert result.get(TASK_DEFINITION, StepKind.CREATE_NEW).reason
    assert store.get(TASK_DEFINITION).identifier == task_definition
    assert store.get(TASK_DEFINITION).deposed == []
    assert not reconciler.plan(declarations).has_changes


def test_unexpected_provider_error_reported(reconciler, provider, store, declarations):
    provider.fail(
        "create",
        "AWS::ECS::Service",
        [EndpointConnectionError(endpoint_url="https://cloudcontrolapi.eu-west-1.amazonaws.com/")],
    )
    result = reconciler.apply(reconciler.plan(declarations))
    assert not result.success
    service = result.get(SERVICE)
    assert service.status == StepStatus.FAILED
    assert isinstance(service.error, EndpointConnectionError)
    assert service.attempts == 1
    assert store.get(SERVICE) is None
    assert len(store.addresses()) == 5
    assert result.summary()[StepStatus.SUCCEEDED] == 5


def test_not_updatable_destroys_then_creates(reconciler, provider, store, make_declarations):
    reconciler.apply(reconciler.plan(make_declarations()))
    old_log_group = store.get(LOG_GROUP).identifier
    declarations = make_declarations()
    declarations["Resources"]["LogGroup"]["Properties"]["RetentionInDays"] = 14
    provider.fail(
        "update",
        "AWS::Logs::LogGroup",
        [ImmutableAttributeConflict("RetentionInDays cannot be updated")],
    )
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.success
    log_group = store.get(LOG_GROUP)
    assert log_group.identifier != old_log_group
    assert log_group.attributes["RetentionInDays"] == 14
    assert log_group.deposed == []
    assert old_log_group not in provider.resources
    assert result.get(LOG_GROUP, StepKind.UPDATE).reason
    assert [_call[2] for _call in provider.calls_for("delete")] == [old_log_group]

    plan = reconciler.plan(declarations)
    assert {str(_op.address): _op.kind for _op in plan.changes}[TASK_DEFINITION] == (
        OperationKind.REPLACE
    )


def test_not_updatable_creates_before_destroy(reconciler, provider, store, make_declarations):
    reconciler.apply(reconciler.plan(make_declarations()))
    old_target_group = store.get(TARGET_GROUP).identifier
    declarations = make_declarations()
    declarations["Resources"]["TargetGroup"]["Properties"]["HealthCheckPath"] = "/ping"
    provider.fail(
        "update",
        "AWS::ElasticLoadBalancingV2::TargetGroup",
        [ImmutableAttributeConflict("HealthCheckPath cannot be updated")],
    )
    result = reconciler.apply(reconciler.plan(declarations))
    assert result.success
    target_group = store.get(TARGET_GROUP)
    assert target_group.identifier != old_target_group
    assert target_group.deposed == [old_target_group]
    assert provider.calls_for("delete") == []

    assert reconciler.apply(reconciler.plan(declarations)).success
    assert store.get(TARGET_GROUP).deposed == []
    assert old_target_group not in provider.resources
    assert (
        store.get(SERVICE).attributes["LoadBalancers"][0]["TargetGroupArn"]
        == target_group.identifier
    )
