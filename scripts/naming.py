"""
Logical id naming for compiled CloudFormation resources.
Follows the serverless framework's AWS naming conventions so generated ids
line up with the ones the framework already put in the template.
"""

import re

ROLE_LOGICAL_ID = "IamRoleLambdaExecution"


class Naming:
    """Default naming service; the host can pass any object with the same methods"""

    def normalize_name(self, name: str) -> str:
        return name[:1].upper() + name[1:]

    def get_normalized_function_name(self, function_name: str) -> str:
        return self.normalize_name(
            function_name.replace("-", "Dash").replace("_", "Underscore")
        )

    def normalize_name_to_alpha_numeric_only(self, name: str) -> str:
        return self.normalize_name(re.sub(r"[^0-9A-Za-z]", "", name))

    def get_lambda_logical_id(self, function_name: str) -> str:
        return f"{self.get_normalized_function_name(function_name)}LambdaFunction"

    def get_config_rule_logical_id(self, function_name: str, suffix: str = "") -> str:
        return f"{self.get_normalized_function_name(function_name)}ConfigRule{suffix}"

    def get_lambda_permission_logical_id(self, function_name: str, suffix: str = "") -> str:
        return f"{self.get_normalized_function_name(function_name)}LambdaPermission{suffix}"

    def get_role_logical_id(self) -> str:
        return ROLE_LOGICAL_ID
