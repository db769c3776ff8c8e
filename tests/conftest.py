"""
In-memory stand-ins for the Step Functions, EventBridge, Scheduler and Logs
control planes, plus shared fixtures.
"""

import copy
import json
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError

from stepdeploy.aws import AWSClients
from stepdeploy.retry import RetryPolicy
from stepdeploy.statemachine import StateMachineService

REGION = "us-east-1"
ACCOUNT = "123456789012"
ROLE_ARN = f"arn:aws:iam::{ACCOUNT}:role/stepdeploy-test"
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

FAST_POLICY = RetryPolicy(min_delay=0, max_delay=0, max_attempts=5)
OWNED = {"ManagedBy": "stepdeploy"}


def client_error(code, message="", operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def sm_arn(name):
    return f"arn:aws:states:{REGION}:{ACCOUNT}:stateMachine:{name}"


def _base(arn):
    return ":".join(arn.split(":")[:7])


class FakePaginator:
    """Serves the whole listing as one page."""

    def __init__(self, fetch):
        self.fetch = fetch

    def paginate(self, PaginationConfig=None, **params):
        yield self.fetch(**params)


class Paginated:
    def get_paginator(self, operation_name):
        return FakePaginator(getattr(self, operation_name))


class FakeSFn(Paginated):
    """Step Functions control plane with versions and aliases."""

    def __init__(self):
        self.machines = {}
        self.versions = {}
        self.aliases = {}
        self.tags = {}
        self.calls = []
        self.pending_statuses = []
        self.fail_delete_version = {}

    def _record(self, _op, **kwargs):
        self.calls.append((_op, kwargs))

    def call_names(self):
        return [name for name, _ in self.calls]

    def seed(self, name, versions=0, aliases=None, tags=None, type="STANDARD"):
        """Create a state machine with ``versions`` published versions."""
        arn = sm_arn(name)
        self.machines[arn] = {
            "name": name,
            "stateMachineArn": arn,
            "definition": json.dumps({"StartAt": "A", "States": {"A": {"Type": "Succeed"}}}),
            "roleArn": ROLE_ARN,
            "type": type,
            "status": "ACTIVE",
            "creationDate": BASE_TIME,
            "loggingConfiguration": {"level": "OFF", "includeExecutionData": False},
            "tracingConfiguration": {"enabled": False},
            "revisionId": "rev-0",
        }
        self.versions[arn] = {}
        self.tags[arn] = [{"key": k, "value": v} for k, v in (tags or {}).items()]
        for _ in range(versions):
            self._publish(arn, None)
        for alias, version in (aliases or {}).items():
            self.aliases[f"{arn}:{alias}"] = {
                "stateMachineAliasArn": f"{arn}:{alias}",
                "name": alias,
                "routingConfiguration": [{"stateMachineVersionArn": f"{arn}:{version}", "weight": 100}],
            }
        return arn

    def _publish(self, arn, description):
        number = max(self.versions[arn], default=0) + 1
        machine = self.machines[arn]
        self.versions[arn][number] = {
            "stateMachineVersionArn": f"{arn}:{number}",
            "creationDate": BASE_TIME + timedelta(minutes=number),
            "description": description or f"version {number}",
            "revisionId": f"rev-{number}",
            "definition": machine["definition"],
            "roleArn": machine["roleArn"],
        }
        return f"{arn}:{number}"

    def list_state_machines(self, **kwargs):
        self._record("list_state_machines", **kwargs)
        return {"stateMachines": [{"name": m["name"], "stateMachineArn": arn}
                                  for arn, m in self.machines.items()]}

    def describe_state_machine(self, stateMachineArn):
        self._record("describe_state_machine", stateMachineArn=stateMachineArn)
        base = _base(stateMachineArn)
        machine = self.machines.get(base)
        if machine is None:
            raise client_error("StateMachineDoesNotExist", f"{stateMachineArn} does not exist")
        if stateMachineArn == base:
            output = dict(machine)
            if self.pending_statuses:
                output["status"] = self.pending_statuses.pop(0)
            return output
        number = int(stateMachineArn.rsplit(":", 1)[1])
        version = self.versions[base].get(number)
        if version is None:
            raise client_error("StateMachineDoesNotExist", f"{stateMachineArn} does not exist")
        output = dict(machine)
        output.update({
            "stateMachineArn": stateMachineArn,
            "definition": version["definition"],
            "roleArn": version["roleArn"],
            "description": version["description"],
            "revisionId": version["revisionId"],
            "creationDate": version["creationDate"],
        })
        return output

    def list_tags_for_resource(self, resourceArn):
        return {"tags": list(self.tags.get(_base(resourceArn), []))}

    def tag_resource(self, resourceArn, tags):
        self._record("tag_resource", resourceArn=resourceArn, tags=tags)
        current = {t["key"]: t["value"] for t in self.tags.get(resourceArn, [])}
        current.update({t["key"]: t["value"] for t in tags})
        self.tags[resourceArn] = [{"key": k, "value": v} for k, v in current.items()]
        return {}

    def create_state_machine(self, **params):
        self._record("create_state_machine", **params)
        self.seed(params["name"], tags={t["key"]: t["value"] for t in params.get("tags", [])},
                  type=params.get("type", "STANDARD"))
        arn = sm_arn(params["name"])
        self.machines[arn]["definition"] = params["definition"]
        version_arn = self._publish(arn, params.get("versionDescription"))
        return {"stateMachineArn": arn, "stateMachineVersionArn": version_arn, "creationDate": BASE_TIME}

    def update_state_machine(self, **params):
        self._record("update_state_machine", **params)
        arn = params["stateMachineArn"]
        machine = self.machines[arn]
        machine["definition"] = params.get("definition", machine["definition"])
        machine["roleArn"] = params.get("roleArn", machine["roleArn"])
        version_arn = self._publish(arn, params.get("versionDescription"))
        return {"updateDate": BASE_TIME, "revisionId": "rev-new", "stateMachineVersionArn": version_arn}

    def delete_state_machine(self, stateMachineArn):
        self._record("delete_state_machine", stateMachineArn=stateMachineArn)
        self.machines.pop(stateMachineArn, None)
        self.versions.pop(stateMachineArn, None)
        for alias_arn in [a for a in self.aliases if _base(a) == stateMachineArn]:
            del self.aliases[alias_arn]
        return {}

    def describe_state_machine_alias(self, stateMachineAliasArn):
        self._record("describe_state_machine_alias", stateMachineAliasArn=stateMachineAliasArn)
        alias = self.aliases.get(stateMachineAliasArn)
        if alias is None:
            raise client_error("ResourceNotFound", f"{stateMachineAliasArn} not found")
        return json.loads(json.dumps(alias))

    def create_state_machine_alias(self, name, routingConfiguration, description=None):
        self._record("create_state_machine_alias", name=name, routingConfiguration=routingConfiguration)
        alias_arn = f"{_base(routingConfiguration[0]['stateMachineVersionArn'])}:{name}"
        self.aliases[alias_arn] = {
            "stateMachineAliasArn": alias_arn,
            "name": name,
            "routingConfiguration": list(routingConfiguration),
        }
        return {"stateMachineAliasArn": alias_arn, "creationDate": BASE_TIME}

    def update_state_machine_alias(self, stateMachineAliasArn, routingConfiguration, description=None):
        self._record("update_state_machine_alias", stateMachineAliasArn=stateMachineAliasArn,
                     routingConfiguration=routingConfiguration)
        self.aliases[stateMachineAliasArn]["routingConfiguration"] = list(routingConfiguration)
        return {"updateDate": BASE_TIME}

    def list_state_machine_aliases(self, stateMachineArn, **kwargs):
        self._record("list_state_machine_aliases", stateMachineArn=stateMachineArn)
        return {"stateMachineAliases": [{"stateMachineAliasArn": arn} for arn in self.aliases
                                        if _base(arn) == stateMachineArn]}

    def list_state_machine_versions(self, stateMachineArn, **kwargs):
        self._record("list_state_machine_versions", stateMachineArn=stateMachineArn)
        versions = self.versions.get(stateMachineArn, {})
        return {"stateMachineVersions": [
            {"stateMachineVersionArn": v["stateMachineVersionArn"], "creationDate": v["creationDate"]}
            for _, v in sorted(versions.items(), reverse=True)
        ]}

    def delete_state_machine_version(self, stateMachineVersionArn):
        self._record("delete_state_machine_version", stateMachineVersionArn=stateMachineVersionArn)
        if stateMachineVersionArn in self.fail_delete_version:
            raise client_error(self.fail_delete_version[stateMachineVersionArn], "boom")
        referencing = [a["stateMachineAliasArn"] for a in self.aliases.values()
                       if any(r["stateMachineVersionArn"] == stateMachineVersionArn
                              for r in a["routingConfiguration"])]
        if referencing:
            raise client_error(
                "ConflictException",
                "Version to be deleted must not be referenced by an alias. "
                f"Current list of aliases referencing this version: [{', '.join(referencing)}]",
            )
        base = _base(stateMachineVersionArn)
        number = int(stateMachineVersionArn.rsplit(":", 1)[1])
        self.versions.get(base, {}).pop(number, None)
        return {}

    def routing(self, alias_arn):
        return self.aliases[alias_arn]["routingConfiguration"]


class FakeEvents(Paginated):
    """EventBridge rules and their targets."""

    def __init__(self):
        self.rules = {}
        self.targets = {}
        self.tags = {}
        self.calls = []
        self.failed_entries = []

    def _record(self, _op, **kwargs):
        self.calls.append((_op, kwargs))

    def add_rule(self, name, targets=(), tags=None, state="ENABLED", schedule_expression="rate(1 hour)"):
        arn = f"arn:aws:events:{REGION}:{ACCOUNT}:rule/{name}"
        self.rules[name] = {
            "Name": name,
            "Arn": arn,
            "State": state,
            "ScheduleExpression": schedule_expression,
            "EventBusName": "default",
        }
        self.targets[name] = [dict(t) for t in targets]
        self.tags[arn] = [{"Key": k, "Value": v} for k, v in (tags or {}).items()]
        return arn

    def list_rule_names_by_target(self, TargetArn, **kwargs):
        self._record("list_rule_names_by_target", TargetArn=TargetArn)
        names = [name for name, targets in self.targets.items()
                 if any(t["Arn"] == TargetArn for t in targets)]
        return {"RuleNames": names}

    def describe_rule(self, Name, EventBusName=None):
        self._record("describe_rule", Name=Name)
        rule = self.rules.get(Name)
        if rule is None:
            raise client_error("ResourceNotFoundException", f"Rule {Name} does not exist.")
        return dict(rule)

    def list_targets_by_rule(self, Rule, EventBusName=None, **kwargs):
        return {"Targets": [dict(t) for t in self.targets.get(Rule, [])]}

    def list_tags_for_resource(self, ResourceARN):
        return {"Tags": list(self.tags.get(ResourceARN, []))}

    def tag_resource(self, ResourceARN, Tags):
        self._record("tag_resource", ResourceARN=ResourceARN, Tags=Tags)
        current = {t["Key"]: t["Value"] for t in self.tags.get(ResourceARN, [])}
        current.update({t["Key"]: t["Value"] for t in Tags})
        self.tags[ResourceARN] = [{"Key": k, "Value": v} for k, v in current.items()]
        return {}

    def put_rule(self, **params):
        self._record("put_rule", **params)
        name = params["Name"]
        arn = f"arn:aws:events:{REGION}:{ACCOUNT}:rule/{name}"
        rule = {"Name": name, "Arn": arn, "EventBusName": params.get("EventBusName", "default")}
        for key in ("ScheduleExpression", "EventPattern", "State", "Description"):
            if key in params:
                rule[key] = params[key]
        self.rules[name] = rule
        self.targets.setdefault(name, [])
        return {"RuleArn": arn}

    def put_targets(self, Rule, Targets, EventBusName=None):
        self._record("put_targets", Rule=Rule, Targets=Targets)
        by_id = {t["Id"]: t for t in self.targets.get(Rule, [])}
        for t in Targets:
            by_id[t["Id"]] = dict(t)
        self.targets[Rule] = list(by_id.values())
        return {"FailedEntryCount": len(self.failed_entries), "FailedEntries": list(self.failed_entries)}

    def remove_targets(self, Rule, Ids, EventBusName=None):
        self._record("remove_targets", Rule=Rule, Ids=Ids)
        self.targets[Rule] = [t for t in self.targets.get(Rule, []) if t["Id"] not in Ids]
        return {"FailedEntryCount": 0, "FailedEntries": []}

    def delete_rule(self, Name, EventBusName=None):
        self._record("delete_rule", Name=Name)
        if self.targets.get(Name):
            raise client_error("ValidationException", "Rule can't be deleted since it has targets.")
        rule = self.rules.pop(Name)
        self.targets.pop(Name, None)
        self.tags.pop(rule["Arn"], None)
        return {}


class FakeScheduler(Paginated):
    """EventBridge Scheduler schedules and groups."""

    def __init__(self):
        self.groups = {"default": f"arn:aws:scheduler:{REGION}:{ACCOUNT}:schedule-group/default"}
        self.group_tags = {}
        self.schedules = {}
        self.calls = []

    def _record(self, _op, **kwargs):
        self.calls.append((_op, kwargs))

    def add_group(self, name, tags=None):
        arn = f"arn:aws:scheduler:{REGION}:{ACCOUNT}:schedule-group/{name}"
        self.groups[name] = arn
        self.group_tags[arn] = [{"Key": k, "Value": v} for k, v in (tags or {}).items()]
        return arn

    def add_schedule(self, name, target_arn, group="default", expression="rate(1 day)", state="ENABLED"):
        if group not in self.groups:
            self.add_group(group)
        self.create_schedule(
            Name=name, GroupName=group, ScheduleExpression=expression, State=state,
            FlexibleTimeWindow={"Mode": "OFF"}, Target={"Arn": target_arn, "RoleArn": ROLE_ARN},
        )
        self.calls.clear()

    def list_schedule_groups(self, **kwargs):
        return {"ScheduleGroups": [{"Name": n, "Arn": arn} for n, arn in self.groups.items()]}

    def list_tags_for_resource(self, ResourceArn):
        return {"Tags": list(self.group_tags.get(ResourceArn, []))}

    def create_schedule_group(self, Name, Tags=()):
        self._record("create_schedule_group", Name=Name, Tags=Tags)
        if Name in self.groups:
            raise client_error("ConflictException", f"Schedule group {Name} already exists.")
        self.add_group(Name, {t["Key"]: t["Value"] for t in Tags})
        return {"ScheduleGroupArn": self.groups[Name]}

    def tag_resource(self, ResourceArn, Tags):
        self._record("tag_resource", ResourceArn=ResourceArn, Tags=Tags)
        current = {t["Key"]: t["Value"] for t in self.group_tags.get(ResourceArn, [])}
        current.update({t["Key"]: t["Value"] for t in Tags})
        self.group_tags[ResourceArn] = [{"Key": k, "Value": v} for k, v in current.items()]
        return {}

    def list_schedules(self, **kwargs):
        return {"Schedules": [{
            "Name": s["Name"],
            "GroupName": s["GroupName"],
            "Arn": s["Arn"],
            "State": s["State"],
            "Target": {"Arn": s["Target"]["Arn"]},
        } for s in self.schedules.values()]}

    def get_schedule(self, Name, GroupName="default"):
        schedule = self.schedules.get((GroupName, Name))
        if schedule is None:
            raise client_error("ResourceNotFoundException", f"Schedule {Name} does not exist.")
        return copy.deepcopy(schedule)

    def create_schedule(self, **params):
        self._record("create_schedule", **params)
        return self._store(params)

    def _store(self, params):
        group = params.get("GroupName", "default")
        if group not in self.groups:
            raise client_error("ResourceNotFoundException", f"Schedule group {group} does not exist.")
        arn = f"arn:aws:scheduler:{REGION}:{ACCOUNT}:schedule/{group}/{params['Name']}"
        stored = dict(params)
        stored["GroupName"] = group
        stored["Arn"] = arn
        self.schedules[(group, params["Name"])] = stored
        return {"ScheduleArn": arn}

    def update_schedule(self, **params):
        self._record("update_schedule", **params)
        return self._store(params)

    def delete_schedule(self, Name, GroupName="default"):
        self._record("delete_schedule", Name=Name, GroupName=GroupName)
        self.schedules.pop((GroupName, Name))
        return {}


class FakeLogs(Paginated):
    def __init__(self, groups=()):
        self.groups = list(groups)

    def describe_log_groups(self, logGroupNamePrefix="", **kwargs):
        return {"logGroups": [{
            "logGroupName": name,
            "arn": f"arn:aws:logs:{REGION}:{ACCOUNT}:log-group:{name}:*",
        } for name in self.groups if name.startswith(logGroupNamePrefix)]}


@pytest.fixture
def sfn_client():
    return FakeSFn()


@pytest.fixture
def events_client():
    return FakeEvents()


@pytest.fixture
def scheduler_client():
    return FakeScheduler()


@pytest.fixture
def logs_client():
    return FakeLogs(["/aws/states/hello"])


@pytest.fixture
def clients(sfn_client, events_client, scheduler_client, logs_client):
    return AWSClients(sfn=sfn_client, events=events_client, scheduler=scheduler_client, logs=logs_client)


@pytest.fixture
def service(sfn_client, logs_client):
    return StateMachineService(sfn_client, logs_client=logs_client, retry_policy=FAST_POLICY,
                               sleep=lambda seconds: None)


@pytest.fixture
def config_file(tmp_path):
    """A config with one rule and one schedule; returns its path."""
    (tmp_path / "definition.json").write_text(json.dumps({
        "StartAt": "Hello",
        "States": {"Hello": {"Type": "Pass", "End": True}},
    }))
    (tmp_path / "stepdeploy.yaml").write_text(f"""
aws_region: {REGION}
tags:
  team: platform
state_machine:
  name: hello
  role_arn: {ROLE_ARN}
  definition: definition.json
trigger:
  event:
    - name: hello-hourly
      schedule_expression: rate(1 hour)
  schedule:
    - name: hello-daily
      schedule_expression: cron(0 9 * * ? *)
      schedule_expression_timezone: Asia/Tokyo
      role_arn: {ROLE_ARN}
""")
    return tmp_path / "stepdeploy.yaml"
