"""
Data models for the state machine, its versions and its executions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from . import arn as arnutil
from .tags import from_sfn_tags, is_managed, merge_tags, to_sfn_tags

KNOWN_AFTER_DEPLOY = "[known after deploy]"

STATUS_ACTIVE = "ACTIVE"
STATUS_DELETING = "DELETING"

TYPE_STANDARD = "STANDARD"
TYPE_EXPRESS = "EXPRESS"

EXECUTION_RUNNING = "RUNNING"
EXECUTION_SUCCEEDED = "SUCCEEDED"
EXECUTION_FAILED = "FAILED"


@dataclass
class StateMachine:
    """A state machine: declared configuration plus what the service reports."""
    name: str
    definition: str = ""
    role_arn: Optional[str] = None
    type: str = TYPE_STANDARD
    logging_configuration: Optional[Dict[str, Any]] = None
    tracing_configuration: Optional[Dict[str, Any]] = None
    tags: Dict[str, str] = field(default_factory=dict)
    version_description: Optional[str] = None

    # Known only once the resource exists
    arn: Optional[str] = None
    status: Optional[str] = None
    creation_date: Optional[datetime] = None
    revision_id: Optional[str] = None

    # Where a declared state machine came from
    config_file_path: Optional[str] = None
    definition_path: Optional[str] = None

    @classmethod
    def from_describe(cls, output: Dict[str, Any], tags: Optional[Dict[str, str]] = None) -> "StateMachine":
        return cls(
            name=output["name"],
            definition=output.get("definition", ""),
            role_arn=output.get("roleArn"),
            type=output.get("type", TYPE_STANDARD),
            logging_configuration=output.get("loggingConfiguration"),
            tracing_configuration=output.get("tracingConfiguration"),
            tags=dict(tags or {}),
            arn=output.get("stateMachineArn"),
            status=output.get("status"),
            creation_date=output.get("creationDate"),
            revision_id=output.get("revisionId"),
        )

    @property
    def unqualified_arn(self) -> Optional[str]:
        if self.arn is None:
            return None
        return arnutil.remove_qualifier(self.arn)

    def qualified_arn(self, qualifier: Optional[str]) -> str:
        return arnutil.qualify(self.arn or "", qualifier)

    def append_tags(self, tags: Dict[str, str]) -> None:
        self.tags = merge_tags(self.tags, tags)

    def is_managed(self) -> bool:
        return is_managed(self.tags)

    def source(self) -> str:
        if self.arn:
            return self.arn
        if self.config_file_path:
            return f"state_machine in {self.config_file_path}"
        return self.name or KNOWN_AFTER_DEPLOY

    def definition_source(self) -> str:
        if self.arn:
            return self.arn
        if self.definition_path:
            return self.definition_path
        return self.name or KNOWN_AFTER_DEPLOY

    def configuration(self) -> Dict[str, Any]:
        """Everything but the definition, in the shape used for diffs."""
        return {
            "Name": self.name,
            "RoleArn": self.role_arn,
            "Type": self.type,
            "LoggingConfiguration": self.logging_configuration,
            "TracingConfiguration": self.tracing_configuration or {"enabled": False},
            "Tags": dict(self.tags),
        }

    def create_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "name": self.name,
            "definition": self.definition,
            "roleArn": self.role_arn,
            "type": self.type,
            "tags": to_sfn_tags(self.tags),
            "publish": True,
        }
        params.update(self._optional_params())
        return params

    def update_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "stateMachineArn": self.unqualified_arn,
            "definition": self.definition,
            "roleArn": self.role_arn,
            "publish": True,
        }
        params.update(self._optional_params())
        return params

    def _optional_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.logging_configuration is not None:
            params["loggingConfiguration"] = self.logging_configuration
        if self.tracing_configuration is not None:
            params["tracingConfiguration"] = self.tracing_configuration
        if self.version_description:
            params["versionDescription"] = self.version_description
        return params


@dataclass
class DeployOutput:
    """Result of publishing a state machine version."""
    state_machine_arn: str
    version_arn: str
    creation_date: Optional[datetime] = None
    update_date: Optional[datetime] = None


@dataclass
class VersionListItem:
    version_arn: str
    version: int
    creation_date: Optional[datetime] = None
    aliases: List[str] = field(default_factory=list)
    description: str = ""
    revision_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": self.version,
            "creation_date": self.creation_date.isoformat() if self.creation_date else None,
        }
        if self.aliases:
            data["aliases"] = list(self.aliases)
        if self.description:
            data["description"] = self.description
        if self.revision_id:
            data["revision_id"] = self.revision_id
        return data


@dataclass
class RollbackResult:
    """Alias repoint performed (or planned) by a rollback."""

    alias_arn: str
    from_version: int
    from_version_arn: str
    target: VersionListItem
    delete_version: bool = False

    @property
    def version(self) -> int:
        return self.target.version

    @property
    def version_arn(self) -> str:
        return self.target.version_arn

    def routing_before(self) -> Dict[str, Any]:
        return {
            "AliasArn": self.alias_arn,
            "RoutingConfiguration": [{"StateMachineVersionArn": self.from_version_arn, "Weight": 100}],
        }

    def routing_after(self) -> Dict[str, Any]:
        return {
            "AliasArn": self.alias_arn,
            "RoutingConfiguration": [{"StateMachineVersionArn": self.target.version_arn, "Weight": 100}],
        }


@dataclass
class VersionList:
    state_machine_arn: str
    versions: List[VersionListItem] = field(default_factory=list)

    def find(self, version: int) -> Optional[VersionListItem]:
        for item in self.versions:
            if item.version == version:
                return item
        return None


@dataclass
class ExecutionOutput:
    """Outcome of starting (and possibly waiting for) an execution."""
    execution_arn: str
    start_date: Optional[datetime] = None
    stop_date: Optional[datetime] = None
    success: Optional[bool] = None
    failed: Optional[bool] = None
    output: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    can_not_dump_history: bool = False

    def elapsed(self) -> Optional[timedelta]:
        if self.start_date is None or self.stop_date is None:
            return None
        return self.stop_date - self.start_date


@dataclass
class HistoryEvent:
    id: int
    type: str
    timestamp: datetime
    step: str
    start_date: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def elapsed(self) -> timedelta:
        return self.timestamp - self.start_date


def state_machine_tags(output: Dict[str, Any]) -> Dict[str, str]:
    """Tags from a ``list_tags_for_resource`` response."""
    return from_sfn_tags(output.get("tags"))
