#!/usr/bin/env python3
"""
Checks the Config rules declared in a compiled template against the rules
deployed in AWS Config. Exits non-zero when a deployed rule has drifted.
"""

import sys
import boto3
import argparse
from typing import Dict, List, Any, Optional, Tuple
from botocore.exceptions import ClientError, NoCredentialsError

from compile_config_rules import TEMPLATE_FILE, load_document


class Colors:
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    CYAN = '\033[96m'
    END = '\033[0m'


def describe_rule(rule: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a ConfigRule (template properties or API response) to the comparable fields"""
    source = rule.get('Source', {})
    details = source.get('SourceDetails', [])
    frequencies = [d['MaximumExecutionFrequency'] for d in details if 'MaximumExecutionFrequency' in d]

    return {
        'Description': rule.get('Description'),
        'ResourceTypes': sorted(rule.get('Scope', {}).get('ComplianceResourceTypes', [])),
        'Owner': source.get('Owner'),
        'MessageTypes': sorted(d.get('MessageType') for d in details),
        # Deployed periodic rules report the frequency on the rule itself
        'MaximumExecutionFrequency': frequencies[0] if frequencies else rule.get('MaximumExecutionFrequency'),
    }


class ConfigRuleFetcher:
    """Reads deployed rules through the AWS Config API"""

    def __init__(self, region: str = 'us-east-1', profile: Optional[str] = None, session: Any = None):
        if session is None:
            session = boto3.Session(profile_name=profile) if profile else boto3.Session()
        self.config_client = session.client('config', region_name=region)

    def get_config_rule(self, rule_name: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.config_client.describe_config_rules(ConfigRuleNames=[rule_name])
        except ClientError as e:
            if e.response['Error']['Code'] == 'NoSuchConfigRuleException':
                return None
            raise

        rules = response.get('ConfigRules', [])
        return describe_rule(rules[0]) if rules else None


class TemplateParser:
    """Named Config rules of a compiled template"""

    def __init__(self, template_path: str = TEMPLATE_FILE):
        self.template = load_document(template_path)
        self.unnamed = []

    def get_config_rules(self) -> Dict[str, Dict[str, Any]]:
        rules = {}
        self.unnamed = []

        for logical_id, resource in self.template.get('Resources', {}).items():
            if resource.get('Type') != 'AWS::Config::ConfigRule':
                continue
            props = resource.get('Properties', {})
            name = props.get('ConfigRuleName')
            if name is None:
                # CloudFormation picks the deployed name, nothing to look up
                self.unnamed.append(logical_id)
            else:
                rules[name] = describe_rule(props)

        return rules


class DiffEngine:

    def compare_config_rule(self, name: str, expected: Dict[str, Any], actual: Optional[Dict[str, Any]]) -> Tuple[List[str], bool]:
        """Differences between declared and deployed rule, and whether it is not deployed yet"""
        if actual is None:
            return [], True

        diffs = [
            f"{key}: Template={expected.get(key)}, AWS={actual.get(key)}"
            for key in ('Description', 'Owner', 'MaximumExecutionFrequency', 'MessageTypes')
            if expected.get(key) != actual.get(key)
        ]

        expected_types = set(expected.get('ResourceTypes', []))
        actual_types = set(actual.get('ResourceTypes', []))
        if expected_types - actual_types:
            diffs.append(f"Missing resource types: {sorted(expected_types - actual_types)}")
        if actual_types - expected_types:
            diffs.append(f"Extra resource types: {sorted(actual_types - expected_types)}")

        return diffs, False


class DriftValidator:
    """Compares every named rule of a template with its deployed counterpart"""

    def __init__(self, template_path: str = TEMPLATE_FILE, region: str = 'us-east-1',
                 profile: Optional[str] = None, fetcher: Optional[ConfigRuleFetcher] = None):
        self.parser = TemplateParser(template_path)
        self.fetcher = fetcher or ConfigRuleFetcher(region, profile)
        self.diff_engine = DiffEngine()
        self.drifted = {}
        self.pending = []

    def validate(self) -> bool:
        self.drifted = {}
        self.pending = []
        expected_rules = self.parser.get_config_rules()

        for logical_id in self.parser.unnamed:
            print(f"{Colors.YELLOW}{logical_id}: no ConfigRuleName, skipped{Colors.END}")

        for rule_name, expected in expected_rules.items():
            actual = self.fetcher.get_config_rule(rule_name)
            diffs, is_new = self.diff_engine.compare_config_rule(rule_name, expected, actual)
            if is_new:
                self.pending.append(rule_name)
                print(f"{Colors.CYAN}{rule_name}: not deployed yet{Colors.END}")
            elif diffs:
                self.drifted[rule_name] = diffs
                print(f"{Colors.RED}{rule_name}: drifted{Colors.END}")
                for diff in diffs:
                    print(f"{Colors.RED}    • {diff}{Colors.END}")
            else:
                print(f"{Colors.GREEN}{rule_name}: in sync{Colors.END}")

        return not self.drifted


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description='Validate deployed AWS Config rules against the compiled template')
    parser.add_argument('--template', default=TEMPLATE_FILE, help=f'Compiled template (default: {TEMPLATE_FILE})')
    parser.add_argument('--region', default='us-east-1', help='AWS region (default: us-east-1)')
    parser.add_argument('--profile', help='AWS profile to use')
    args = parser.parse_args(argv)

    try:
        validator = DriftValidator(template_path=args.template, region=args.region, profile=args.profile)
        in_sync = validator.validate()
    except FileNotFoundError:
        print(f"{Colors.RED}Template not found: {args.template}, run compile_config_rules.py first{Colors.END}")
        sys.exit(1)
    except (ClientError, NoCredentialsError) as e:
        print(f"{Colors.RED}AWS Config lookup failed: {e}{Colors.END}")
        sys.exit(1)

    if not in_sync:
        print(f"{Colors.RED}{len(validator.drifted)} Config rule(s) drifted from {args.template}{Colors.END}")
        sys.exit(1)


if __name__ == '__main__':
    main()
