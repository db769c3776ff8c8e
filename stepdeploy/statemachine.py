"""
Version and alias lifecycle of a Step Functions state machine.

Publishes versions, routes the alias, rolls back, purges old versions and
runs executions. All remote calls go through one ``stepfunctions`` client.
"""

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from . import arn as arnutil
from .cache import Cache
from .errors import (
    AccessDeniedError,
    AliasNotFound,
    Cancelled,
    ConflictError,
    MaxRetryExceeded,
    NotFoundError,
    OperationError,
    PurgeError,
    RollbackTargetNotFound,
    StateMachineNotFound,
    StepDeployError,
    error_message,
    is_access_denied,
    is_conflict,
    is_not_found,
)
from .models import (
    EXECUTION_FAILED,
    EXECUTION_RUNNING,
    EXECUTION_SUCCEEDED,
    STATUS_ACTIVE,
    STATUS_DELETING,
    TYPE_EXPRESS,
    TYPE_STANDARD,
    DeployOutput,
    ExecutionOutput,
    HistoryEvent,
    RollbackResult,
    StateMachine,
    VersionList,
    VersionListItem,
    state_machine_tags,
)
from .paginate import collect, collect_pages, iter_pages
from .ports import LogsClient, SFnClient
from .retry import DEFAULT_POLICY, RetryPolicy
from .tags import ownership_tags, to_sfn_tags

logger = logging.getLogger(__name__)

DEFAULT_ALIAS = "current"
LIST_PAGE_SIZE = 32
HISTORY_PAGE_SIZE = 100
EXECUTION_POLL_INTERVAL = 5.0
STOP_GRACE_TIMEOUT = 60.0
STOP_ERROR = "stepdeploy.Cancelled"

_ALIAS_REFERENCE_MARKER = "Current list of aliases referencing this version: ["

_TERMINAL_DETAIL_KEYS = {
    "ExecutionAborted": "executionAbortedEventDetails",
    "ExecutionFailed": "executionFailedEventDetails",
    "ExecutionTimedOut": "executionTimedOutEventDetails",
}


def parse_referencing_aliases(message: str) -> Optional[List[str]]:
    """
    Extract alias names from a version-delete conflict message.

    The service reports references as
    ``... Current list of aliases referencing this version: [a, b]``; entries
    may be alias names or alias ARNs.

    Returns:
        Alias names, or None if the message does not carry the list
    """
    start = message.find(_ALIAS_REFERENCE_MARKER)
    if start == -1:
        return None
    start += len(_ALIAS_REFERENCE_MARKER)
    end = message.find("]", start)
    if end == -1:
        return None
    names = []
    for entry in message[start:end].split(","):
        entry = entry.strip()
        if entry:
            names.append(entry.rsplit(":", 1)[-1])
    return names


def single_routing(version_arn: str) -> List[Dict[str, Any]]:
    return [{"stateMachineVersionArn": version_arn, "weight": 100}]


class StateMachineService:
    """
    Lifecycle manager for one tool invocation.

    Lookups are cached per instance; writes invalidate the entries they change.
    """

    def __init__(self, client: SFnClient, logs_client: Optional[LogsClient] = None,
                 alias_name: str = DEFAULT_ALIAS, retry_policy: RetryPolicy = DEFAULT_POLICY,
                 cache_ttl: Optional[float] = None, cancel: Optional[threading.Event] = None,
                 poll_interval: float = EXECUTION_POLL_INTERVAL,
                 stop_grace_timeout: float = STOP_GRACE_TIMEOUT,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.logs_client = logs_client
        self.alias_name = alias_name
        self.retry_policy = retry_policy
        self.cancel = cancel
        self.poll_interval = poll_interval
        self.stop_grace_timeout = stop_grace_timeout
        self._sleep = sleep

        self._arns = Cache()
        self._log_group_arns = Cache()
        self._version_details = Cache()
        self._aliases = Cache(ttl=cache_ttl)
        self._alias_lists = Cache(ttl=cache_ttl)
        self._version_lists = Cache(ttl=cache_ttl)

    def set_alias_name(self, alias_name: str) -> None:
        self.alias_name = alias_name

    def _attempts(self):
        return self.retry_policy.attempts(cancel=self.cancel, sleep=self._sleep)

    # ------------------------------------------------------------------
    # Lookup

    def get_arn(self, name: str) -> str:
        """
        Resolve a state machine name to its unqualified ARN.

        Raises:
            StateMachineNotFound: no state machine has that name
        """
        cached = self._arns.get(name)
        if cached is not None:
            return cached
        try:
            for page in iter_pages(self.client, "list_state_machines", page_size=LIST_PAGE_SIZE):
                for item in page.get("stateMachines", []):
                    if item["name"] == name:
                        self._arns.set(name, item["stateMachineArn"])
                        return item["stateMachineArn"]
        except ClientError as e:
            raise OperationError("list state machines", name, e) from e
        raise StateMachineNotFound(f"state machine `{name}` does not exist")

    def describe(self, name_or_arn: str, qualifier: Optional[str] = None) -> StateMachine:
        """
        Fetch configuration and tags of a state machine.

        A version qualifier describes that version. An alias qualifier
        describes the version the alias routes most traffic to; the returned
        ``arn`` is then that version's ARN.

        Raises:
            StateMachineNotFound: the state machine or version does not exist
            AliasNotFound: the alias does not exist
        """
        if name_or_arn.startswith("arn:"):
            base_arn = arnutil.remove_qualifier(name_or_arn)
        else:
            base_arn = self.get_arn(name_or_arn)

        target = base_arn
        if qualifier:
            if arnutil.is_version_qualifier(qualifier):
                target = arnutil.add_qualifier(base_arn, qualifier)
            else:
                logger.debug(f"qualifier `{qualifier}` is not a version number, resolve it as an alias")
                alias = self.describe_alias(arnutil.add_qualifier(base_arn, qualifier))
                target = _heaviest_route(alias) or base_arn

        try:
            output = self.client.describe_state_machine(stateMachineArn=target)
        except ClientError as e:
            if is_not_found(e):
                raise StateMachineNotFound(f"state machine `{target}` does not exist") from e
            if is_access_denied(e):
                raise AccessDeniedError(error_message(e)) from e
            raise OperationError("describe state machine", target, e) from e
        try:
            tags = state_machine_tags(self.client.list_tags_for_resource(resourceArn=base_arn))
        except ClientError as e:
            raise OperationError("list tags", base_arn, e) from e
        return StateMachine.from_describe(output, tags)

    def describe_alias(self, alias_arn: str) -> Dict[str, Any]:
        """
        Describe an alias, cached per alias ARN.

        Raises:
            AliasNotFound: the alias does not exist
        """
        cached = self._aliases.get(alias_arn)
        if cached is not None:
            return cached
        try:
            alias = self.client.describe_state_machine_alias(stateMachineAliasArn=alias_arn)
        except ClientError as e:
            if is_not_found(e):
                raise AliasNotFound(f"alias `{alias_arn}` does not exist") from e
            raise OperationError("describe state machine alias", alias_arn, e) from e
        self._aliases.set(alias_arn, alias)
        return alias

    def get_log_group_arn(self, log_group_name: str) -> str:
        """
        Resolve a CloudWatch Logs group name to its ARN.

        Raises:
            NotFoundError: no log group has that exact name
        """
        cached = self._log_group_arns.get(log_group_name)
        if cached is not None:
            return cached
        if self.logs_client is None:
            raise NotFoundError(f"log group `{log_group_name}` can not be resolved without a logs client")
        try:
            groups = collect_pages(self.logs_client, "describe_log_groups", "logGroups",
                                   logGroupNamePrefix=log_group_name)
        except ClientError as e:
            raise OperationError("describe log groups", log_group_name, e) from e
        for group in groups:
            if group.get("logGroupName") == log_group_name:
                self._log_group_arns.set(log_group_name, group["arn"])
                return group["arn"]
        raise NotFoundError(f"log group `{log_group_name}` does not exist")

    # ------------------------------------------------------------------
    # Deploy

    def deploy(self, state_machine: StateMachine) -> DeployOutput:
        """
        Create or update the state machine, publish a version and route the alias to it.

        Args:
            state_machine: Desired state machine; ``arn`` set means it already exists

        Returns:
            DeployOutput with the new version ARN
        """
        state_machine.append_tags(ownership_tags())
        if state_machine.arn is None:
            output = self._create(state_machine)
        else:
            output = self._update(state_machine)
        self._arns.set(state_machine.name, output.state_machine_arn)
        self._version_lists.invalidate(output.state_machine_arn)

        self.wait_for_active(state_machine)
        self.route_alias(state_machine, output.version_arn)
        return output

    def _create(self, state_machine: StateMachine) -> DeployOutput:
        logger.debug(f"creating state machine {state_machine.name}")
        try:
            created = self.client.create_state_machine(**state_machine.create_params())
        except ClientError as e:
            raise OperationError("create state machine", state_machine.name, e) from e
        logger.info(f"created state machine `{created['stateMachineVersionArn']}`")
        state_machine.arn = created["stateMachineArn"]
        state_machine.creation_date = created.get("creationDate")
        state_machine.status = STATUS_ACTIVE
        return DeployOutput(
            state_machine_arn=created["stateMachineArn"],
            version_arn=created["stateMachineVersionArn"],
            creation_date=created.get("creationDate"),
            update_date=created.get("creationDate"),
        )

    def _update(self, state_machine: StateMachine) -> DeployOutput:
        base_arn = state_machine.unqualified_arn
        state_machine.arn = base_arn
        logger.debug(f"updating state machine {base_arn}")
        try:
            updated = self.client.update_state_machine(**state_machine.update_params())
        except ClientError as e:
            raise OperationError("update state machine", base_arn, e) from e
        logger.debug(f"revision_id = {updated.get('revisionId')}")

        # update_state_machine does not take tags
        try:
            self.client.tag_resource(resourceArn=base_arn, tags=to_sfn_tags(state_machine.tags))
        except ClientError as e:
            raise OperationError("tag state machine", base_arn, e) from e
        logger.info(f"updated state machine `{updated['stateMachineVersionArn']}`")
        return DeployOutput(
            state_machine_arn=base_arn,
            version_arn=updated["stateMachineVersionArn"],
            creation_date=state_machine.creation_date,
            update_date=updated.get("updateDate"),
        )

    def wait_for_active(self, state_machine: StateMachine) -> None:
        """
        Poll until the state machine reports ACTIVE.

        Raises:
            AccessDeniedError: describe is not permitted; never retried
            MaxRetryExceeded: still not ACTIVE when the retry policy ran out
        """
        target = state_machine.unqualified_arn
        for _ in self._attempts():
            try:
                output = self.client.describe_state_machine(stateMachineArn=target)
            except ClientError as e:
                if is_access_denied(e):
                    raise AccessDeniedError(f"describe `{target}` denied: {error_message(e)}") from e
                logger.warning(f"describe state machine failed, retrying: {e}")
                continue
            status = output.get("status")
            if status == STATUS_ACTIVE:
                state_machine.status = status
                return
            logger.info(f"waiting for state machine `{target}` to become {STATUS_ACTIVE}, current status is {status}")
        raise MaxRetryExceeded(f"state machine `{target}` did not become {STATUS_ACTIVE}")

    def route_alias(self, state_machine: StateMachine, version_arn: str) -> None:
        """Point the alias at ``version_arn`` with weight 100, creating it if needed."""
        alias_arn = state_machine.qualified_arn(self.alias_name)
        routing = single_routing(version_arn)
        try:
            alias = self.describe_alias(alias_arn)
        except AliasNotFound:
            logger.info(f"alias `{self.alias_name}` does not exist, creating it")
            try:
                created = self.client.create_state_machine_alias(
                    name=self.alias_name,
                    routingConfiguration=routing,
                )
            except ClientError as e:
                raise OperationError("create state machine alias", alias_arn, e) from e
            logger.info(f"created alias `{created['stateMachineAliasArn']}`")
        else:
            logger.info(f"updating alias `{alias['stateMachineAliasArn']}`")
            try:
                self.client.update_state_machine_alias(
                    stateMachineAliasArn=alias["stateMachineAliasArn"],
                    routingConfiguration=routing,
                )
            except ClientError as e:
                raise OperationError("update state machine alias", alias_arn, e) from e
        self._aliases.invalidate(alias_arn)
        self._alias_lists.invalidate(state_machine.unqualified_arn)

    # ------------------------------------------------------------------
    # Versions

    def list_versions(self, state_machine: StateMachine) -> VersionList:
        """List versions newest first, each with the aliases routing to it."""
        base_arn = state_machine.unqualified_arn
        if base_arn is None:
            raise StateMachineNotFound(f"state machine `{state_machine.name}` does not exist")

        aliases_by_version: Dict[str, List[str]] = {}
        for alias_arn in self._list_alias_arns(base_arn):
            alias = self.describe_alias(alias_arn)
            for route in alias.get("routingConfiguration", []):
                aliases_by_version.setdefault(route["stateMachineVersionArn"], []).append(alias["name"])

        result = VersionList(state_machine_arn=base_arn)
        for item in self._list_version_items(base_arn):
            version_arn = item["stateMachineVersionArn"]
            try:
                number = arnutil.parse_version(version_arn)
            except ValueError as e:
                logger.warning(f"skip version `{version_arn}`: {e}")
                continue
            try:
                detail = self._describe_version(version_arn)
            except ClientError as e:
                logger.warning(f"describe version `{version_arn}` failed: {e}")
                continue
            result.versions.append(VersionListItem(
                version_arn=version_arn,
                version=number,
                creation_date=item.get("creationDate"),
                aliases=aliases_by_version.get(version_arn, []),
                description=detail.get("description") or "",
                revision_id=detail.get("revisionId") or "",
            ))
        result.versions.sort(key=lambda v: v.version, reverse=True)
        return result

    def _list_alias_arns(self, base_arn: str) -> List[str]:
        def load():
            try:
                items = collect(self.client.list_state_machine_aliases, "stateMachineAliases",
                                stateMachineArn=base_arn, maxResults=LIST_PAGE_SIZE)
            except ClientError as e:
                raise OperationError("list state machine aliases", base_arn, e) from e
            return [item["stateMachineAliasArn"] for item in items]
        return self._alias_lists.get_or_load(base_arn, load)

    def _list_version_items(self, base_arn: str) -> List[Dict[str, Any]]:
        def load():
            try:
                return collect(self.client.list_state_machine_versions, "stateMachineVersions",
                               stateMachineArn=base_arn, maxResults=LIST_PAGE_SIZE)
            except ClientError as e:
                raise OperationError("list state machine versions", base_arn, e) from e
        return self._version_lists.get_or_load(base_arn, load)

    def _describe_version(self, version_arn: str) -> Dict[str, Any]:
        return self._version_details.get_or_load(
            version_arn, lambda: self.client.describe_state_machine(stateMachineArn=version_arn))

    def delete_version(self, version_arn: str) -> bool:
        """
        Delete a version, retrying while only this tool's alias still references it.

        Returns:
            True if deleted, False if skipped because another alias references it

        Raises:
            ConflictError: conflict whose message lists no aliases
            MaxRetryExceeded: the reference never cleared
        """
        for _ in self._attempts():
            try:
                self.client.delete_state_machine_version(stateMachineVersionArn=version_arn)
            except ClientError as e:
                if is_conflict(e):
                    aliases = parse_referencing_aliases(error_message(e))
                    if aliases is None:
                        raise ConflictError(f"delete version `{version_arn}`: {error_message(e)}") from e
                    others = [name for name in aliases if name != self.alias_name]
                    if others:
                        logger.warning(f"`{version_arn}` is referenced by alias [{', '.join(others)}], skip delete")
                        return False
                    logger.debug(f"`{version_arn}` still referenced by `{self.alias_name}`, retrying")
                    continue
                if is_access_denied(e):
                    raise AccessDeniedError(error_message(e)) from e
                raise OperationError("delete state machine version", version_arn, e) from e
            self._version_details.invalidate(version_arn)
            self._version_lists.invalidate(arnutil.remove_qualifier(version_arn))
            return True
        raise MaxRetryExceeded(f"delete version `{version_arn}` did not succeed")

    def purge_versions(self, state_machine: StateMachine, keep_versions: int) -> List[int]:
        """
        Delete versions beyond the newest ``keep_versions`` that no alias references.

        Failures are collected; every eligible version is attempted.

        Returns:
            Version numbers deleted

        Raises:
            PurgeError: one or more deletions failed
        """
        if state_machine.arn is None:
            raise StateMachineNotFound(f"state machine `{state_machine.name}` does not exist")
        if keep_versions < 1:
            logger.info("keep versions is less than 1, skip purge")
            return []

        versions = self.list_versions(state_machine).versions
        deleted = []
        errors: List[Exception] = []
        for i, v in enumerate(versions):
            if i == 0:
                logger.info(f"keep latest version {v.version}")
                continue
            if i < keep_versions:
                logger.debug(f"keep version {v.version}")
                continue
            if v.aliases:
                logger.warning(f"version {v.version} has aliases [{', '.join(v.aliases)}], skip delete")
                continue
            logger.info(f"deleting state machine version {v.version} (`{v.version_arn}`)")
            try:
                if self.delete_version(v.version_arn):
                    deleted.append(v.version)
            except Cancelled:
                raise
            except StepDeployError as e:
                errors.append(OperationError("delete version", str(v.version), e))
        if errors:
            raise PurgeError(errors)
        return deleted

    # ------------------------------------------------------------------
    # Rollback

    def rollback(self, state_machine: StateMachine, keep_version: bool = False,
                 dry_run: bool = False) -> Optional[RollbackResult]:
        """
        Route the alias back to the previous version.

        Returns:
            The repoint performed (or planned, with ``dry_run``), or None
            when there was nothing to do

        Raises:
            RollbackTargetNotFound: no version older than the routed one exists
        """
        if state_machine.arn is None:
            raise StateMachineNotFound(f"state machine `{state_machine.name}` does not exist")
        if state_machine.status == STATUS_DELETING:
            logger.info(f"{state_machine.arn} already deleting")
            return None

        alias_arn = state_machine.qualified_arn(self.alias_name)
        try:
            alias = self.describe_alias(alias_arn)
        except AliasNotFound:
            logger.info(f"alias `{self.alias_name}` does not exist, can not rollback")
            return None
        routing = alias.get("routingConfiguration", [])
        if len(routing) != 1:
            logger.info(f"alias `{self.alias_name}` routes to {len(routing)} versions, "
                        "can not rollback automatically, please rollback manually")
            return None

        current_arn = routing[0]["stateMachineVersionArn"]
        try:
            current_version = arnutil.parse_version(current_arn)
        except ValueError as e:
            raise OperationError("rollback", alias_arn, e) from e
        logger.info(f"alias `{self.alias_name}` routes to version {current_version}")
        if current_version <= 1:
            logger.info("no previous version, can not rollback")
            return None

        versions = self.list_versions(state_machine)
        target = None
        for v in versions.versions:
            if v.version < current_version and (target is None or v.version > target.version):
                target = v
        if target is None:
            raise RollbackTargetNotFound(f"no version older than {current_version} found")

        logger.info(f"rollback to version {target.version}")
        if not dry_run:
            self.route_alias(state_machine, target.version_arn)
            logger.info("rollback success")

        result = RollbackResult(alias_arn=alias_arn, from_version=current_version,
                                from_version_arn=current_arn, target=target)
        if keep_version:
            return result
        current = versions.find(current_version)
        others = [a for a in (current.aliases if current else []) if a != self.alias_name]
        if others:
            logger.warning(f"version {current_version} has aliases [{', '.join(others)}], skip delete")
            return result
        logger.info(f"deleting version {current_version}")
        result.delete_version = True
        if not dry_run:
            if self.delete_version(current_arn):
                logger.info(f"`{current_arn}` deleted")
        return result

    # ------------------------------------------------------------------
    # Delete

    def delete(self, state_machine: StateMachine) -> None:
        """Delete the state machine, retrying while the service reports a conflict."""
        if state_machine.status == STATUS_DELETING:
            logger.info(f"{state_machine.arn} already deleting")
            return
        target = state_machine.unqualified_arn
        for _ in self._attempts():
            try:
                self.client.delete_state_machine(stateMachineArn=target)
            except ClientError as e:
                if is_conflict(e):
                    logger.debug(f"conflict deleting `{target}`, retrying: {e}")
                    continue
                if is_access_denied(e):
                    raise AccessDeniedError(error_message(e)) from e
                raise OperationError("delete state machine", target, e) from e
            self._arns.invalidate(state_machine.name)
            self._alias_lists.invalidate(target)
            self._version_lists.invalidate(target)
            return
        raise MaxRetryExceeded(f"delete state machine `{target}` did not succeed")

    # ------------------------------------------------------------------
    # Executions

    def start_execution(self, state_machine: StateMachine, input: str = "{}",
                        qualifier: Optional[str] = None, name: Optional[str] = None,
                        async_: bool = False) -> ExecutionOutput:
        """
        Start an execution of the (optionally qualified) state machine.

        STANDARD executions are polled until they stop unless ``async_`` is
        set; EXPRESS executions run synchronously unless ``async_`` is set.

        Raises:
            Cancelled: the wait was cancelled; a stop was attempted first
        """
        name = name or str(uuid.uuid4())
        target = state_machine.qualified_arn(qualifier)
        params = {
            "stateMachineArn": target,
            "input": input,
            "name": name,
            "traceHeader": f"{state_machine.name}_{name}",
        }
        if state_machine.type == TYPE_EXPRESS and not async_:
            result = self._start_sync_execution(params)
            result.can_not_dump_history = True
            return result
        if state_machine.type not in (TYPE_STANDARD, TYPE_EXPRESS):
            raise ValueError(f"unknown state machine type: {state_machine.type}")

        try:
            started = self.client.start_execution(**params)
        except ClientError as e:
            raise OperationError("start execution", target, e) from e
        result = ExecutionOutput(execution_arn=started["executionArn"], start_date=started.get("startDate"))
        logger.info(f"execution arn={result.execution_arn}")
        logger.info(f"started at={result.start_date}")
        if state_machine.type == TYPE_EXPRESS:
            result.can_not_dump_history = True
            return result
        if async_:
            return result
        self._wait_execution(result)
        return result

    def _start_sync_execution(self, params: Dict[str, Any]) -> ExecutionOutput:
        try:
            output = self.client.start_sync_execution(**params)
        except ClientError as e:
            raise OperationError("start sync execution", params["stateMachineArn"], e) from e
        status = output.get("status")
        result = ExecutionOutput(
            execution_arn=output["executionArn"],
            start_date=output.get("startDate"),
            stop_date=output.get("stopDate"),
            success=status == EXECUTION_SUCCEEDED,
            failed=status == EXECUTION_FAILED,
            output=output.get("output"),
        )
        if status == EXECUTION_FAILED:
            result.detail = {"error": output.get("error"), "cause": output.get("cause")}
        return result

    def _describe_execution(self, execution_arn: str) -> Dict[str, Any]:
        try:
            return self.client.describe_execution(executionArn=execution_arn)
        except ClientError as e:
            raise OperationError("describe execution", execution_arn, e) from e

    def _wait_execution(self, result: ExecutionOutput) -> None:
        execution_arn = result.execution_arn
        output = self._describe_execution(execution_arn)
        while output.get("status") == EXECUTION_RUNNING:
            logger.info(f"execution status: {output['status']}")
            try:
                if self.cancel is not None:
                    if self.cancel.wait(self.poll_interval):
                        self._stop_cancelled_execution(execution_arn, "cancellation requested")
                else:
                    self._sleep(self.poll_interval)
            except KeyboardInterrupt:
                self._stop_cancelled_execution(execution_arn, "interrupted")
            output = self._describe_execution(execution_arn)

        status = output.get("status")
        logger.info(f"execution status: {status}")
        result.success = status == EXECUTION_SUCCEEDED
        result.failed = status == EXECUTION_FAILED
        result.start_date = output.get("startDate", result.start_date)
        result.stop_date = output.get("stopDate")
        result.output = output.get("output")

        try:
            history = self.client.get_execution_history(
                executionArn=execution_arn,
                includeExecutionData=True,
                maxResults=5,
                reverseOrder=True,
            )
        except ClientError as e:
            raise OperationError("get execution history", execution_arn, e) from e
        for event in history.get("events", []):
            key = _TERMINAL_DETAIL_KEYS.get(event.get("type"))
            if key:
                result.detail = event.get(key)
                break

    def _stop_cancelled_execution(self, execution_arn: str, reason: str) -> None:
        """Attempt one bounded stop of a still running execution, then raise Cancelled."""
        logger.warning(f"try stop execution: {execution_arn}")
        try:
            output = self.client.describe_execution(executionArn=execution_arn)
        except ClientError as e:
            logger.error(f"describe execution failed while cancelling: {e}")
            raise Cancelled(reason) from e
        if output.get("status") != EXECUTION_RUNNING:
            logger.warning(f"execution already stopped: {execution_arn}")
            raise Cancelled(reason)

        failures: List[Exception] = []

        def stop():
            try:
                self.client.stop_execution(executionArn=execution_arn, error=STOP_ERROR, cause=reason)
            except Exception as e:
                failures.append(e)

        worker = threading.Thread(target=stop, daemon=True)
        worker.start()
        worker.join(timeout=self.stop_grace_timeout)
        if worker.is_alive():
            logger.error(f"stop execution timed out after {self.stop_grace_timeout}s")
        elif failures:
            logger.error(f"stop execution failed: {failures[0]}")
        raise Cancelled(reason)

    def get_execution_history(self, execution_arn: str) -> List[HistoryEvent]:
        """All history events, each tagged with the step it happened in."""
        start_date = self._describe_execution(execution_arn).get("startDate")
        events = []
        step = ""
        try:
            for page in iter_pages(self.client, "get_execution_history", page_size=HISTORY_PAGE_SIZE,
                                   executionArn=execution_arn, includeExecutionData=True):
                for event in page.get("events", []):
                    entered = event.get("stateEnteredEventDetails")
                    if entered:
                        step = entered.get("name", step)
                    events.append(HistoryEvent(
                        id=event["id"],
                        type=event["type"],
                        timestamp=event["timestamp"],
                        step=step,
                        start_date=start_date,
                        details=event,
                    ))
        except ClientError as e:
            raise OperationError("get execution history", execution_arn, e) from e
        return events


def _heaviest_route(alias: Dict[str, Any]) -> Optional[str]:
    best = None
    best_weight = -1
    for route in alias.get("routingConfiguration", []):
        if route.get("weight", 0) > best_weight:
            best_weight = route.get("weight", 0)
            best = route["stateMachineVersionArn"]
    return best
