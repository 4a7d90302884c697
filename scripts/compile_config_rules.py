#!/usr/bin/env python3
"""
Compiles `config` events on serverless functions into AWS Config custom rules.
Each config event adds a ConfigRule and a Lambda permission to the compiled
CloudFormation template, and the execution role is granted the permissions
a custom rule needs to report evaluations.
"""

import os, sys, json, copy, argparse
import yaml
from typing import Any, Dict, List, Mapping, Optional, Set

from naming import Naming

SERVERLESS_FILE = "serverless.yml"
TEMPLATE_FILE = ".serverless/cloudformation-template-update-stack.json"

SCHEDULED_NOTIFICATION = "ScheduledNotification"
CONFIGURATION_ITEM_CHANGE_NOTIFICATION = "ConfigurationItemChangeNotification"
MESSAGE_TYPES = (SCHEDULED_NOTIFICATION, CONFIGURATION_ITEM_CHANGE_NOTIFICATION)
DEFAULT_SCHEDULED_FREQUENCY = "TwentyFour_Hours"

CONFIG_STATEMENT = {
    "Effect": "Allow",
    "Action": [
        "config:GetResourceConfigHistory",
        "config:PutEvaluations",
    ],
    "Resource": "*",
}


class ConfigRuleError(Exception):
    """Base class for invalid config events"""

    def __init__(self, function_name: str, message: str):
        super().__init__(message)
        self.function_name = function_name


class InvalidConfigKind(ConfigRuleError):
    pass


class MissingRequiredField(ConfigRuleError):
    pass


class MissingResourceTypes(MissingRequiredField):
    pass


class InvalidFieldShape(ConfigRuleError):
    pass


class InvalidResourceTypesShape(InvalidFieldShape):
    pass


class InvalidExecutionRole(ConfigRuleError):
    """The execution role has no inline policy statement list to extend"""

    def __init__(self, role_logical_id: str, message: str):
        super().__init__(None, message)
        self.role_logical_id = role_logical_id


def merge(target: Dict[str, Any], *sources: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep merge sources into target, left to right. Lists merge by index."""
    for source in sources:
        for key, value in source.items():
            if key in target:
                target[key] = _merge_value(target[key], value)
            else:
                target[key] = copy.deepcopy(value)
    return target


def _merge_value(current: Any, incoming: Any) -> Any:
    if isinstance(current, dict) and isinstance(incoming, Mapping):
        return merge(current, incoming)
    if isinstance(current, list) and isinstance(incoming, (list, tuple)):
        for index, item in enumerate(incoming):
            if index < len(current):
                current[index] = _merge_value(current[index], item)
            else:
                current.append(copy.deepcopy(item))
        return current
    return copy.deepcopy(incoming)


def _message_type(config: Mapping[str, Any]) -> Any:
    # An empty `messageType:` in YAML loads as None
    message_type = config.get("messageType")
    if message_type is None:
        return CONFIGURATION_ITEM_CHANGE_NOTIFICATION
    return message_type


def validate_config(function_name: str, config: Any) -> None:
    if not isinstance(config, Mapping):
        raise InvalidConfigKind(
            function_name,
            f'Config event of function "{function_name}" is not an object',
        )

    message_type = _message_type(config)
    if message_type not in MESSAGE_TYPES:
        raise InvalidFieldShape(
            function_name,
            f'Config event of function "{function_name}" has unknown messageType '
            f'"{message_type}", expected one of {", ".join(MESSAGE_TYPES)}',
        )

    if config.get("resourceTypes") is None:
        if message_type != SCHEDULED_NOTIFICATION:
            raise MissingResourceTypes(
                function_name,
                f'Missing "resourceTypes" property for config event of function "{function_name}"',
            )
    elif not isinstance(config["resourceTypes"], (list, tuple)):
        raise InvalidResourceTypesShape(
            function_name,
            f'Config event of function "{function_name}" must declare "resourceTypes" as a list',
        )


def build_config_rule(config: Mapping[str, Any], lambda_logical_id: str,
                      permission_logical_id: str) -> Dict[str, Any]:
    message_type = _message_type(config)

    source_detail = {"EventSource": "aws.config"}
    frequency = config.get("maxExecutionFrequency")
    if frequency is None and message_type == SCHEDULED_NOTIFICATION:
        frequency = DEFAULT_SCHEDULED_FREQUENCY
    if frequency is not None:
        source_detail["MaximumExecutionFrequency"] = frequency
    source_detail["MessageType"] = message_type

    props = {}
    if config.get("ruleName") is not None:
        props["ConfigRuleName"] = config["ruleName"]
    if config.get("description") is not None:
        props["Description"] = config["description"]
    if config.get("resourceTypes") is not None:
        props["Scope"] = {"ComplianceResourceTypes": list(config["resourceTypes"])}
    props["Source"] = {
        "Owner": "CUSTOM_LAMBDA",
        "SourceIdentifier": {"Fn::GetAtt": [lambda_logical_id, "Arn"]},
        "SourceDetails": [source_detail],
    }

    return {
        "Type": "AWS::Config::ConfigRule",
        "Properties": props,
        "DependsOn": [lambda_logical_id, permission_logical_id],
    }


def build_lambda_permission(lambda_logical_id: str) -> Dict[str, Any]:
    return {
        "Type": "AWS::Lambda::Permission",
        "Properties": {
            "FunctionName": {"Fn::GetAtt": [lambda_logical_id, "Arn"]},
            "Action": "lambda:InvokeFunction",
            "Principal": "config.amazonaws.com",
        },
        "DependsOn": lambda_logical_id,
    }


def _logical_id_suffix(naming: Any, config: Mapping[str, Any], position: int,
                       taken: Set[str]) -> str:
    """
    Suffix telling a function's config rules apart.

    Named rules use the alphanumeric rule name, unnamed rules after the first
    use their position. A suffix already taken on this function (`ec2-tags`
    and `ec2tags`, or a rule named `2` next to a second unnamed rule) gets the
    event's position appended until it is free.
    """
    if config.get("ruleName") is not None:
        suffix = naming.normalize_name_to_alpha_numeric_only(str(config["ruleName"]))
    else:
        suffix = str(position) if position > 1 else ""

    while suffix in taken:
        suffix = f"{suffix}{position}"
    taken.add(suffix)
    return suffix


def _role_statements(role: Mapping[str, Any], role_logical_id: str) -> List[Dict[str, Any]]:
    try:
        statements = role["Properties"]["Policies"][0]["PolicyDocument"]["Statement"]
    except (KeyError, IndexError, TypeError):
        statements = None
    if not isinstance(statements, list):
        raise InvalidExecutionRole(
            role_logical_id,
            f'Role "{role_logical_id}" has no Properties.Policies[0].PolicyDocument.Statement list',
        )
    return statements


def _config_events(function_obj: Optional[Mapping[str, Any]]) -> List[Any]:
    events = (function_obj or {}).get("events") or []
    return [event["config"] for event in events
            if isinstance(event, Mapping) and "config" in event]


def emit(functions: Mapping[str, Any], resources: Dict[str, Any],
         policy_statements: Optional[List[Dict[str, Any]]] = None,
         naming: Any = None) -> None:
    """
    Add a ConfigRule and Lambda permission per config event to resources.

    Appends the config statement to the execution role's policy once per call,
    and only when the role is declared in resources. policy_statements
    overrides the statement list found on the role.
    """
    naming = naming or Naming()

    for function_name, function_obj in functions.items():
        taken = set()
        for position, config in enumerate(_config_events(function_obj), start=1):
            validate_config(function_name, config)

            suffix = _logical_id_suffix(naming, config, position, taken)
            lambda_logical_id = naming.get_lambda_logical_id(function_name)
            rule_logical_id = naming.get_config_rule_logical_id(function_name, suffix)
            permission_logical_id = naming.get_lambda_permission_logical_id(function_name, suffix)

            merge(
                resources,
                {rule_logical_id: build_config_rule(config, lambda_logical_id, permission_logical_id)},
                {permission_logical_id: build_lambda_permission(lambda_logical_id)},
            )

    role_logical_id = naming.get_role_logical_id()
    role = resources.get(role_logical_id)
    if not role:
        return

    if policy_statements is None:
        policy_statements = _role_statements(role, role_logical_id)
    policy_statements.append(copy.deepcopy(CONFIG_STATEMENT))


def compile_events(service: Dict[str, Any], naming: Any = None) -> None:
    """package:compileEvents hook"""
    template = service["provider"]["compiledCloudFormationTemplate"]
    emit(service.get("functions") or {}, template.setdefault("Resources", {}), naming=naming)


HOOKS = {
    "package:compileEvents": compile_events,
}


def load_document(path: str) -> Dict[str, Any]:
    with open(path) as fh:
        if path.endswith(".json"):
            return json.load(fh)
        return yaml.safe_load(fh) or {}


def write_document(path: str, document: Dict[str, Any]) -> None:
    with open(path, "w") as fh:
        if path.endswith(".json"):
            json.dump(document, fh, indent=2)
            fh.write("\n")
        else:
            yaml.dump(document, fh, sort_keys=False)


def count_config_rules(resources: Mapping[str, Any]) -> int:
    return sum(1 for res in resources.values()
               if isinstance(res, Mapping) and res.get("Type") == "AWS::Config::ConfigRule")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Add AWS Config rules for config events to a compiled template")
    parser.add_argument("--serverless", default=SERVERLESS_FILE, help=f"Service definition (default: {SERVERLESS_FILE})")
    parser.add_argument("--template", default=TEMPLATE_FILE, help=f"Compiled CloudFormation template (default: {TEMPLATE_FILE})")
    parser.add_argument("--output", help="Where to write the result (default: overwrite --template)")
    args = parser.parse_args(argv)

    for path in (args.serverless, args.template):
        if not os.path.exists(path):
            print(f"missing {path}")
            sys.exit(1)

    service = load_document(args.serverless)
    template = load_document(args.template)
    service["provider"] = dict(service.get("provider") or {}, compiledCloudFormationTemplate=template)

    resources = template.setdefault("Resources", {})
    before = count_config_rules(resources)
    try:
        for hook in HOOKS.values():
            hook(service)
    except ConfigRuleError as e:
        print(f"error: {e}")
        sys.exit(1)

    output = args.output or args.template
    write_document(output, template)

    print(f"Wrote {output} with {count_config_rules(resources) - before} new config rule(s).")


if __name__ == "__main__":
    main()
