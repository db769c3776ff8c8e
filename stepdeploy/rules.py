"""
EventBridge rules that start the state machine.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from botocore.exceptions import ClientError

from . import arn as arnutil
from .cache import Cache
from .errors import OperationError, RuleNotFound, is_not_found
from .models import KNOWN_AFTER_DEPLOY
from .paginate import collect_pages
from .ports import EventBridgeClient
from .reconcile import TriggerResource, TriggerService, unique
from .tags import APP_NAME, from_aws_tags, is_managed, merge_tags, ownership_tags, to_aws_tags

logger = logging.getLogger(__name__)

DEFAULT_TARGET_ID = f"{APP_NAME}-managed-state-machine"
DEFAULT_EVENT_BUS = "default"
STATE_ENABLED = "ENABLED"
STATE_DISABLED = "DISABLED"


def normalize_event_pattern(pattern: Any) -> Optional[str]:
    """Event patterns travel as JSON strings; accept dicts too."""
    if pattern is None:
        return None
    if isinstance(pattern, str):
        return pattern
    return json.dumps(pattern, ensure_ascii=False)


@dataclass
class EventBridgeRule(TriggerResource):
    name: str
    schedule_expression: Optional[str] = None
    event_pattern: Optional[str] = None
    description: Optional[str] = None
    event_bus_name: str = DEFAULT_EVENT_BUS
    state: Optional[str] = STATE_ENABLED
    tags: Dict[str, str] = field(default_factory=dict)
    target: Dict[str, Any] = field(default_factory=dict)
    additional_targets: List[Dict[str, Any]] = field(default_factory=list)
    rule_arn: Optional[str] = None
    config_file_path: Optional[str] = None

    # Targets the tool does not manage are preserved as they are live
    MUTABLE_FIELDS = ("state", "additional_targets")

    def source(self) -> str:
        if self.rule_arn:
            return self.rule_arn
        if self.config_file_path:
            return f"trigger.event `{self.name}` in {self.config_file_path}"
        return self.name or KNOWN_AFTER_DEPLOY

    def bind_target(self, target_arn: str) -> None:
        self.target["Arn"] = target_arn
        if not self.target.get("Id"):
            self.target["Id"] = DEFAULT_TARGET_ID

    def append_tags(self, tags: Dict[str, str]) -> None:
        self.tags = merge_tags(self.tags, tags)

    def is_managed(self) -> bool:
        return is_managed(self.tags)

    def is_enabled(self) -> bool:
        return self.state == STATE_ENABLED

    def snapshot(self) -> Dict[str, Any]:
        pattern: Any = self.event_pattern
        if pattern:
            try:
                pattern = json.loads(pattern)
            except ValueError:
                pass
        return {
            "Name": self.name,
            "Description": self.description,
            "EventBusName": self.event_bus_name,
            "EventPattern": pattern,
            "ScheduleExpression": self.schedule_expression,
            "State": self.state,
            "Target": dict(self.target),
            "AdditionalTargets": [dict(t) for t in self.additional_targets],
            "Tags": dict(self.tags),
        }

    def put_rule_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"Name": self.name, "EventBusName": self.event_bus_name}
        if self.schedule_expression:
            params["ScheduleExpression"] = self.schedule_expression
        if self.event_pattern:
            params["EventPattern"] = self.event_pattern
        if self.state:
            params["State"] = self.state
        if self.description:
            params["Description"] = self.description
        return params


class RuleService(TriggerService[EventBridgeRule]):
    """EventBridge backend. Describes are cached per rule name."""

    kind = "rule"

    def __init__(self, client: EventBridgeClient):
        self.client = client
        self._rules = Cache()
        self._targets = Cache()
        self._tags = Cache()

    def search_related(self, target_arn: str, declared_names: Iterable[str] = ()) -> List[EventBridgeRule]:
        names = self._rule_names_by_target(target_arn)
        unqualified = arnutil.remove_qualifier(target_arn)
        if unqualified != target_arn:
            names.extend(self._rule_names_by_target(unqualified))

        rules = []
        declared = set(declared_names)
        for name in unique(names + sorted(declared)):
            try:
                rule = self.describe_rule(name, target_arn)
            except RuleNotFound:
                if name not in declared:
                    raise
                logger.debug(f"declared rule `{name}` not found")
                continue
            if not rule.is_managed():
                logger.warning(f"rule `{name}` targets the state machine but is not managed by {APP_NAME}, ignore it")
                continue
            rules.append(rule)
        rules.sort(key=lambda r: r.name)
        logger.debug(f"{len(rules)} related rules found")
        return rules

    def _rule_names_by_target(self, target_arn: str) -> List[str]:
        try:
            return collect_pages(self.client, "list_rule_names_by_target", "RuleNames",
                                 TargetArn=target_arn)
        except ClientError as e:
            raise OperationError("list rule names by target", target_arn, e) from e

    def describe_rule(self, name: str, target_arn: str) -> EventBridgeRule:
        """
        Describe a rule with its tags and targets.

        The target pointing at ``target_arn`` becomes ``target``; failing an
        exact match, one pointing at the unqualified ARN or another alias of
        the same state machine does. All other targets are additional.

        Raises:
            RuleNotFound: the rule does not exist
        """
        output = self._describe(name)
        rule_arn = output["Arn"]
        try:
            targets = self._targets.get_or_load(name, lambda: collect_pages(
                self.client, "list_targets_by_rule", "Targets",
                Rule=name, EventBusName=output.get("EventBusName", DEFAULT_EVENT_BUS)))
            tags = self._tags.get_or_load(rule_arn, lambda: from_aws_tags(
                self.client.list_tags_for_resource(ResourceARN=rule_arn).get("Tags")))
        except ClientError as e:
            raise OperationError("describe rule", name, e) from e

        rule = EventBridgeRule(
            name=output["Name"],
            schedule_expression=output.get("ScheduleExpression"),
            event_pattern=output.get("EventPattern"),
            description=output.get("Description"),
            event_bus_name=output.get("EventBusName", DEFAULT_EVENT_BUS),
            state=output.get("State"),
            tags=dict(tags),
            rule_arn=rule_arn,
        )
        unqualified = arnutil.remove_qualifier(target_arn)
        exact = None
        candidate = None
        for t in targets:
            t_arn = t.get("Arn", "")
            if exact is None and t_arn == target_arn:
                exact = t
            elif candidate is None and arnutil.remove_qualifier(t_arn) == unqualified:
                candidate = t
        chosen = exact or candidate
        rule.target = dict(chosen) if chosen else {}
        rule.additional_targets = [dict(t) for t in targets if t is not chosen]
        return rule

    def _describe(self, name: str) -> Dict[str, Any]:
        cached = self._rules.get(name)
        if cached is not None:
            return cached
        try:
            output = self.client.describe_rule(Name=name)
        except ClientError as e:
            if is_not_found(e):
                raise RuleNotFound(f"rule `{name}` does not exist") from e
            raise OperationError("describe rule", name, e) from e
        self._rules.set(name, output)
        return output

    def _exists_unowned(self, rule: EventBridgeRule) -> bool:
        try:
            output = self._describe(rule.name)
        except RuleNotFound:
            return False
        try:
            tags = self._tags.get_or_load(output["Arn"], lambda: from_aws_tags(
                self.client.list_tags_for_resource(ResourceARN=output["Arn"]).get("Tags")))
        except ClientError as e:
            raise OperationError("list tags", output["Arn"], e) from e
        return not is_managed(tags)

    def _put(self, rule: EventBridgeRule, current: Optional[EventBridgeRule]) -> int:
        rule.append_tags(ownership_tags())
        try:
            put = self.client.put_rule(**rule.put_rule_params())
        except ClientError as e:
            raise OperationError("put rule", rule.name, e) from e
        rule.rule_arn = put["RuleArn"]

        target_id = rule.target.get("Id")
        extra = current.additional_targets if current is not None else rule.additional_targets
        kept = []
        replaced = []
        for t in extra:
            if t.get("Id") == target_id:
                continue
            if t.get("Arn") == rule.target.get("Arn"):
                replaced.append(t["Id"])
                continue
            kept.append(t)
        if current is not None and current.target.get("Id") and current.target["Id"] != target_id:
            replaced.append(current.target["Id"])
        targets = [rule.target] + kept
        logger.debug(f"put {len(targets)} targets to rule `{rule.name}`")
        try:
            output = self.client.put_targets(Rule=rule.name, EventBusName=rule.event_bus_name,
                                             Targets=targets)
        except ClientError as e:
            raise OperationError("put targets", rule.name, e) from e
        failed = output.get("FailedEntryCount", 0)
        for entry in output.get("FailedEntries", []):
            logger.warning(f"failed to put target to rule `{rule.name}`: {entry}")

        if replaced:
            logger.debug(f"remove replaced targets {replaced} from rule `{rule.name}`")
            try:
                self.client.remove_targets(Rule=rule.name, EventBusName=rule.event_bus_name,
                                           Ids=replaced)
            except ClientError as e:
                raise OperationError("remove targets", rule.name, e) from e

        try:
            self.client.tag_resource(ResourceARN=rule.rule_arn, Tags=to_aws_tags(rule.tags))
        except ClientError as e:
            raise OperationError("tag rule", rule.name, e) from e

        self._rules.invalidate(rule.name)
        self._targets.invalidate(rule.name)
        self._tags.invalidate(rule.rule_arn)
        return failed

    def _delete(self, rule: EventBridgeRule) -> None:
        if not rule.is_managed():
            logger.warning(f"rule `{rule.name}` is not managed by {APP_NAME}, skip delete")
            return
        ids = [t["Id"] for t in [rule.target] + rule.additional_targets if t.get("Id")]
        try:
            if ids:
                self.client.remove_targets(Rule=rule.name, EventBusName=rule.event_bus_name, Ids=ids)
            self.client.delete_rule(Name=rule.name, EventBusName=rule.event_bus_name)
        except ClientError as e:
            raise OperationError("delete rule", rule.name, e) from e
        self._rules.invalidate(rule.name)
        self._targets.invalidate(rule.name)
        if rule.rule_arn:
            self._tags.invalidate(rule.rule_arn)
