"""
Capability interfaces over the remote control planes.

boto3 clients satisfy these structurally. Services annotate against the
narrowest group they need, so test fakes only implement those methods.
"""

from typing import Any, Dict, Protocol


class Paginated(Protocol):
    def get_paginator(self, operation_name: str) -> Any: ...


class StateMachineListing(Paginated, Protocol):
    def list_state_machines(self, **kwargs: Any) -> Dict[str, Any]: ...
    def list_state_machine_versions(self, **kwargs: Any) -> Dict[str, Any]: ...
    def list_state_machine_aliases(self, **kwargs: Any) -> Dict[str, Any]: ...


class StateMachineMutation(Protocol):
    def describe_state_machine(self, **kwargs: Any) -> Dict[str, Any]: ...
    def create_state_machine(self, **kwargs: Any) -> Dict[str, Any]: ...
    def update_state_machine(self, **kwargs: Any) -> Dict[str, Any]: ...
    def delete_state_machine(self, **kwargs: Any) -> Dict[str, Any]: ...
    def delete_state_machine_version(self, **kwargs: Any) -> Dict[str, Any]: ...
    def describe_state_machine_alias(self, **kwargs: Any) -> Dict[str, Any]: ...
    def create_state_machine_alias(self, **kwargs: Any) -> Dict[str, Any]: ...
    def update_state_machine_alias(self, **kwargs: Any) -> Dict[str, Any]: ...


class Tagging(Protocol):
    def list_tags_for_resource(self, **kwargs: Any) -> Dict[str, Any]: ...
    def tag_resource(self, **kwargs: Any) -> Dict[str, Any]: ...


class ExecutionControl(Protocol):
    def start_execution(self, **kwargs: Any) -> Dict[str, Any]: ...
    def start_sync_execution(self, **kwargs: Any) -> Dict[str, Any]: ...
    def describe_execution(self, **kwargs: Any) -> Dict[str, Any]: ...
    def stop_execution(self, **kwargs: Any) -> Dict[str, Any]: ...
    def get_execution_history(self, **kwargs: Any) -> Dict[str, Any]: ...


class SFnClient(StateMachineListing, StateMachineMutation, Tagging, ExecutionControl, Protocol):
    pass


class EventBridgeClient(Paginated, Tagging, Protocol):
    def list_rule_names_by_target(self, **kwargs: Any) -> Dict[str, Any]: ...
    def describe_rule(self, **kwargs: Any) -> Dict[str, Any]: ...
    def put_rule(self, **kwargs: Any) -> Dict[str, Any]: ...
    def delete_rule(self, **kwargs: Any) -> Dict[str, Any]: ...
    def list_targets_by_rule(self, **kwargs: Any) -> Dict[str, Any]: ...
    def put_targets(self, **kwargs: Any) -> Dict[str, Any]: ...
    def remove_targets(self, **kwargs: Any) -> Dict[str, Any]: ...


class SchedulerClient(Paginated, Tagging, Protocol):
    def list_schedule_groups(self, **kwargs: Any) -> Dict[str, Any]: ...
    def create_schedule_group(self, **kwargs: Any) -> Dict[str, Any]: ...
    def list_schedules(self, **kwargs: Any) -> Dict[str, Any]: ...
    def get_schedule(self, **kwargs: Any) -> Dict[str, Any]: ...
    def create_schedule(self, **kwargs: Any) -> Dict[str, Any]: ...
    def update_schedule(self, **kwargs: Any) -> Dict[str, Any]: ...
    def delete_schedule(self, **kwargs: Any) -> Dict[str, Any]: ...


class LogsClient(Paginated, Protocol):
    def describe_log_groups(self, **kwargs: Any) -> Dict[str, Any]: ...
