"""
Deploy, rollback, diff, versions, status, delete and execute workflows.

The App wires configuration to the lifecycle manager and the trigger
reconcilers. It returns results; printing is left to the CLI.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import arn as arnutil
from .aws import AWSClients
from .config import Config
from .errors import ConfigurationError, StateMachineNotFound, StepDeployError
from .models import KNOWN_AFTER_DEPLOY, STATUS_DELETING, DeployOutput, ExecutionOutput, HistoryEvent, StateMachine, VersionList
from .reconcile import DeployResult, TriggerResource, TriggerService, plan
from .render import state_machine_diff
from .rules import EventBridgeRule, RuleService
from .schedules import Schedule, ScheduleService, filter_passed
from .statemachine import StateMachineService
from .tags import ownership_tags

logger = logging.getLogger(__name__)

NOT_DEPLOYED = "NOT DEPLOYED"
LATEST = "$LATEST"
DEFAULT_KEEP_VERSIONS = 5


@dataclass
class TriggerDeployResult:
    """Outcome of reconciling both trigger kinds."""
    rules: DeployResult = field(default_factory=DeployResult)
    schedules: DeployResult = field(default_factory=DeployResult)
    deleted: List[str] = field(default_factory=list)

    @property
    def failed_target_count(self) -> int:
        return self.rules.failed_target_count + self.schedules.failed_target_count


class App:
    """stepdeploy workflows for one configuration."""

    def __init__(self, cfg: Config, clients: Optional[AWSClients] = None,
                 sfn: Optional[StateMachineService] = None,
                 rules: Optional[RuleService] = None,
                 schedules: Optional[ScheduleService] = None,
                 alias: Optional[str] = None,
                 cancel: Optional[threading.Event] = None,
                 color: bool = True):
        self.cfg = cfg
        self.color = color
        if sfn is None or rules is None or schedules is None:
            if clients is None:
                raise ConfigurationError("AWS clients are required")
        self.sfn = sfn or StateMachineService(clients.sfn, logs_client=clients.logs, cancel=cancel)
        self.rules = rules or RuleService(clients.events)
        self.schedules = schedules or ScheduleService(clients.scheduler)
        self.sfn.set_alias_name(alias or cfg.alias)

    @property
    def alias_name(self) -> str:
        return self.sfn.alias_name

    @property
    def state_machine_name(self) -> str:
        return self.cfg.state_machine.name

    def _describe_current(self, qualifier: Optional[str] = None) -> Optional[StateMachine]:
        try:
            return self.sfn.describe(self.state_machine_name, qualifier)
        except StateMachineNotFound:
            return None

    def _desired_state_machine(self) -> StateMachine:
        desired = self.cfg.new_state_machine(resolve_log_group=self.sfn.get_log_group_arn)
        desired.append_tags(ownership_tags())
        return desired

    # ------------------------------------------------------------------
    # Triggers

    def _prepare(self, service: TriggerService, desired: Sequence[TriggerResource],
                 target_arn: str, search: bool = True) -> List[TriggerResource]:
        """Fetch owned live triggers and align the desired ones with them."""
        current: List[TriggerResource] = []
        if search:
            current = service.search_related(target_arn, [d.name for d in desired])
        service.sync_state(desired, current)
        service.bind(desired, target_arn)
        for d in desired:
            if isinstance(d, EventBridgeRule):
                d.append_tags(ownership_tags())
        return current

    def _desired_schedules(self) -> Tuple[List[Schedule], List[Schedule]]:
        active, passed = filter_passed(self.cfg.new_schedules())
        for s in passed:
            logger.warning(f"schedule `{s.name}` has passed, skip deploy or delete")
        return active, passed

    def _trigger_sets(self, target_arn: str, search: bool = True):
        desired_rules = self.cfg.new_rules()
        current_rules = self._prepare(self.rules, desired_rules, target_arn, search)

        desired_schedules, passed = self._desired_schedules()
        current_schedules = self._prepare(self.schedules, desired_schedules, target_arn, search)
        passed_names = {s.name for s in passed}
        current_schedules = [s for s in current_schedules if s.name not in passed_names]
        return (current_rules, desired_rules), (current_schedules, desired_schedules)

    def deploy_triggers(self, target_arn: str) -> TriggerDeployResult:
        """Reconcile rules and schedules against ``target_arn``."""
        (current_rules, desired_rules), (current_schedules, desired_schedules) = self._trigger_sets(target_arn)
        result = TriggerDeployResult()
        for service, current, desired, attr in (
            (self.rules, current_rules, desired_rules, "rules"),
            (self.schedules, current_schedules, desired_schedules, "schedules"),
        ):
            stale = plan(current, desired).delete
            service.delete(stale)
            result.deleted.extend(r.name for r in stale)
            setattr(result, attr, service.deploy(current, desired))
        return result

    # ------------------------------------------------------------------
    # Workflows

    def deploy(self, dry_run: bool = False, skip_trigger: bool = False,
               unified: bool = True) -> Tuple[Optional[DeployOutput], str]:
        """
        Publish the configured state machine and reconcile its triggers.

        Returns:
            (deploy output or None on dry run, rendered diff on dry run)
        """
        logger.info(f"starting deploy{' (dry run)' if dry_run else ''}")
        desired = self._desired_state_machine()
        current = self._describe_current()
        if current is not None:
            if current.type != desired.type:
                raise ConfigurationError(
                    f"state machine type can not change from {current.type} to {desired.type}")
            desired.arn = current.arn
            desired.creation_date = current.creation_date

        if dry_run:
            text = self.diff(unified=unified, skip_trigger=skip_trigger)
            logger.info("finish deploy (dry run)")
            return None, text

        output = self.sfn.deploy(desired)
        if not skip_trigger:
            target = arnutil.add_qualifier(output.state_machine_arn, self.alias_name)
            triggers = self.deploy_triggers(target)
            if triggers.failed_target_count:
                raise StepDeployError(f"failed to put {triggers.failed_target_count} targets")
        logger.info("finish deploy")
        return output, ""

    def rollback(self, dry_run: bool = False, keep_version: bool = False):
        logger.info(f"starting rollback{' (dry run)' if dry_run else ''}")
        current = self.sfn.describe(self.state_machine_name)
        target = self.sfn.rollback(current, keep_version=keep_version, dry_run=dry_run)
        logger.info("finish rollback")
        return target

    def diff(self, unified: bool = True, qualifier: Optional[str] = None,
             skip_trigger: bool = False) -> str:
        """Diff live state (optionally at ``qualifier``) against the configuration."""
        desired = self._desired_state_machine()
        current = self._describe_current(qualifier)
        chunks = [state_machine_diff(current, desired, unified=unified, color=self.color)]
        if not skip_trigger:
            if current is not None:
                target = arnutil.add_qualifier(arnutil.remove_qualifier(current.arn), self.alias_name)
            else:
                target = KNOWN_AFTER_DEPLOY
            rule_sets, schedule_sets = self._trigger_sets(target, search=current is not None)
            chunks.append(self.rules.diff(*rule_sets, unified=unified, color=self.color))
            chunks.append(self.schedules.diff(*schedule_sets, unified=unified, color=self.color))
        return "\n".join(c.strip("\n") for c in chunks if c.strip())

    def versions(self, delete: bool = False, keep_versions: int = DEFAULT_KEEP_VERSIONS) -> VersionList:
        current = self.sfn.describe(self.state_machine_name)
        if delete:
            self.sfn.purge_versions(current, keep_versions)
        return self.sfn.list_versions(current)

    def status(self, latest: bool = False) -> Dict[str, Any]:
        """Status document of the state machine and its triggers."""
        qualifier = None if latest else self.alias_name
        current = self.sfn.describe(self.state_machine_name, qualifier)
        try:
            version = arnutil.parse_version(current.arn or "")
        except ValueError:
            version = 0
        base_arn = arnutil.remove_qualifier(current.arn or "")
        target = arnutil.add_qualifier(base_arn, self.alias_name)

        declared_rules = self.cfg.new_rules()
        rules = self.rules.search_related(target, [r.name for r in declared_rules])
        rule_names = {r.name for r in rules}
        rule_status = [{
            "rule_arn": r.rule_arn,
            "rule_name": r.name,
            "status": r.state,
            "schedule_expression": r.schedule_expression,
            "event_pattern": r.event_pattern,
            "target": _target_label(r.target.get("Arn", ""), base_arn),
        } for r in rules]
        rule_status.extend({
            "rule_name": r.name,
            "status": NOT_DEPLOYED,
            "schedule_expression": r.schedule_expression,
            "event_pattern": r.event_pattern,
        } for r in declared_rules if r.name not in rule_names)

        declared_schedules = self.cfg.new_schedules()
        schedules = self.schedules.search_related(target, [s.name for s in declared_schedules])
        schedule_names = {s.name for s in schedules}
        schedule_status = [{
            "schedule_name": s.name,
            "schedule_arn": s.schedule_arn,
            "status": s.state,
            "schedule_expression": s.schedule_expression,
            "schedule_expression_timezone": s.schedule_expression_timezone,
            "target": _target_label(s.target.get("Arn", ""), base_arn),
        } for s in schedules]
        schedule_status.extend({
            "schedule_name": s.name,
            "status": NOT_DEPLOYED,
            "schedule_expression": s.schedule_expression,
            "schedule_expression_timezone": s.schedule_expression_timezone,
        } for s in declared_schedules if s.name not in schedule_names)

        return {
            "state_machine": {
                "arn": base_arn,
                "name": self.state_machine_name,
                "current_version": version,
                "status": current.status,
                "created_at": current.creation_date.isoformat() if current.creation_date else "",
            },
            "event_bridge": rule_status,
            "event_bridge_scheduler": schedule_status,
        }

    def delete(self, dry_run: bool = False, force: bool = False,
               confirm: Optional[Callable[[str], str]] = None) -> str:
        """
        Delete owned triggers, then the state machine.

        Without ``force`` the operator must type the state machine name into
        ``confirm``.

        Returns:
            Rendered diff of what is (or would be) deleted
        """
        current = self.sfn.describe(self.state_machine_name)
        if current.status == STATUS_DELETING:
            logger.info(f"{current.arn} already deleting")
            return ""
        target = arnutil.add_qualifier(arnutil.remove_qualifier(current.arn), self.alias_name)
        rules = self.rules.search_related(target, [r.name for r in self.cfg.new_rules()])
        schedules = self.schedules.search_related(target, [s.name for s in self.cfg.new_schedules()])

        chunks = [state_machine_diff(current, None, color=self.color)]
        chunks.append(self.rules.diff(rules, [], color=self.color))
        chunks.append(self.schedules.diff(schedules, [], color=self.color))
        text = "\n".join(c.strip("\n") for c in chunks if c.strip())
        if dry_run:
            return text

        if not force:
            if confirm is None:
                raise StepDeployError("delete requires confirmation or force")
            answer = confirm(f"Enter the state machine name `{self.state_machine_name}` to confirm deletion")
            if (answer or "").strip() != self.state_machine_name:
                raise StepDeployError("delete cancelled: state machine name did not match")

        self.rules.delete(rules)
        self.schedules.delete(schedules)
        self.sfn.delete(current)
        logger.info(f"deleted state machine `{current.arn}`")
        return text

    def execute(self, input: str = "{}", qualifier: Optional[str] = None,
                name: Optional[str] = None, async_: bool = False,
                dump_history: bool = False) -> Tuple[ExecutionOutput, List[HistoryEvent]]:
        current = self.sfn.describe(self.state_machine_name)
        output = self.sfn.start_execution(current, input=input, qualifier=qualifier,
                                          name=name, async_=async_)
        history: List[HistoryEvent] = []
        if dump_history and not async_:
            if output.can_not_dump_history:
                logger.warning("execution history is not available for this execution")
            else:
                history = self.sfn.get_execution_history(output.execution_arn)
        return output, history


def _target_label(target_arn: str, base_arn: str) -> str:
    if not target_arn:
        return ""
    qualifier = target_arn[len(base_arn):] if target_arn.startswith(base_arn) else target_arn
    qualifier = qualifier.lstrip(":")
    return qualifier or LATEST
