#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Custom exceptions for ecs-reconciler
"""


class ReconcilerBaseException(Exception):
    """
    Top class for ECS Reconciler Exceptions
    """

    def __init__(self, msg, *args):
        super().__init__(msg, *args)


class InvalidDeclarationError(ReconcilerBaseException):
    """
    Exception when a resource declaration is malformed, i.e. missing Type or with unknown properties
    """


class CycleError(ReconcilerBaseException):
    """
    Exception when the dependencies between resources (or between scheduled steps) form a cycle.

    :ivar list cycle: the addresses forming the cycle, in order
    """

    def __init__(self, msg, cycle=None, *args):
        super().__init__(msg, *args)
        self.cycle = list(cycle) if cycle else []


class UnresolvedReferenceError(ReconcilerBaseException):
    """
    Exception when a resource references another resource that is not declared
    """

    def __init__(self, msg, source=None, target=None, *args):
        super().__init__(msg, *args)
        self.source = source
        self.target = target


class ImmutableAttributeConflict(ReconcilerBaseException):
    """
    Raised when an update would change a property that can only be set on creation.
    The diff engine turns it into a Replace operation.
    """

    def __init__(self, msg, properties=None, *args):
        super().__init__(msg, *args)
        self.properties = sorted(properties) if properties else []


class LockHeldError(ReconcilerBaseException):
    """
    Exception when the state store lock is already held by another apply
    """

    def __init__(self, msg, holder=None, *args):
        super().__init__(msg, *args)
        self.holder = holder


class StalePlanError(ReconcilerBaseException):
    """
    Exception when a plan is applied against a state which changed since the plan was computed
    """


class PlanConsumedError(ReconcilerBaseException):
    """
    Exception when trying to apply a plan that was already applied
    """


class ProviderError(ReconcilerBaseException):
    """
    Top class for errors returned by the provider API

    :ivar str error_code: the error code returned by the provider, if any
    """

    def __init__(self, msg, error_code=None, *args):
        super().__init__(msg, *args)
        self.error_code = error_code


class TransientProviderError(ProviderError):
    """
    Provider error that is worth retrying (throttling, service internal errors, network failures)
    """


class PermanentFailure(ProviderError):
    """
    Provider error that is not retried. Also raised once transient errors exhausted all attempts.
    """


class OperationTimeout(PermanentFailure):
    """
    Raised when a resource did not reach a stable state within the polling timeout
    """
