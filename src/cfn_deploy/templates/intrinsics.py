"""Static evaluation of the intrinsic functions used in export and import names.

Only what can be known before a stack exists is evaluated: parameter values,
pseudo parameters and string plumbing (Sub, Join, Select). Anything that
depends on a created resource evaluates to ``None``.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set

SUB_VARIABLE = re.compile(r"\$\{([^}]+)\}")

PSEUDO_PARAMETERS = {
    "AWS::StackName",
    "AWS::StackId",
    "AWS::Region",
    "AWS::AccountId",
    "AWS::Partition",
    "AWS::URLSuffix",
    "AWS::NoValue",
    "AWS::NotificationARNs",
}


@dataclass
class EvaluationContext:
    """Values known before the stack is applied."""

    stack_name: str
    region: Optional[str] = None
    account_id: Optional[str] = None
    parameters: Dict[str, Optional[str]] = field(default_factory=dict)

    def ref(self, name: str) -> Optional[str]:
        if name == "AWS::StackName":
            return self.stack_name
        if name == "AWS::Region":
            return self.region
        if name == "AWS::AccountId":
            return self.account_id
        if name == "AWS::Partition":
            return "aws"
        if name == "AWS::URLSuffix":
            return "amazonaws.com"
        return self.parameters.get(name)


def evaluate(value: Any, context: EvaluationContext) -> Optional[str]:
    """Evaluate an expression to a string, or None when it is not static."""
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)

    if not isinstance(value, dict) or len(value) != 1:
        return None

    (function, args), = value.items()

    if function == "Ref":
        return context.ref(args) if isinstance(args, str) else None

    if function == "Fn::Sub":
        return _evaluate_sub(args, context)

    if function == "Fn::Join":
        if not isinstance(args, list) or len(args) != 2 or not isinstance(args[1], list):
            return None
        delimiter = evaluate(args[0], context)
        parts = [evaluate(part, context) for part in args[1]]
        if delimiter is None or any(part is None for part in parts):
            return None
        return delimiter.join(parts)

    if function == "Fn::Select":
        if not isinstance(args, list) or len(args) != 2 or not isinstance(args[1], list):
            return None
        index = evaluate(args[0], context)
        if index is None or not index.isdigit() or int(index) >= len(args[1]):
            return None
        return evaluate(args[1][int(index)], context)

    return None


def _evaluate_sub(args: Any, context: EvaluationContext) -> Optional[str]:
    if isinstance(args, str):
        template, variables = args, {}
    elif isinstance(args, list) and len(args) == 2 and isinstance(args[1], dict):
        template, variables = args
    else:
        return None

    if not isinstance(template, str):
        return None

    unresolved = False

    def replace(match: "re.Match[str]") -> str:
        nonlocal unresolved
        name = match.group(1)
        if name.startswith("!"):
            return "${" + name[1:] + "}"
        if name in variables:
            resolved = evaluate(variables[name], context)
        elif "." in name:
            resolved = None  # ${Resource.Attribute}
        else:
            resolved = context.ref(name)
        if resolved is None:
            unresolved = True
            return ""
        return resolved

    result = SUB_VARIABLE.sub(replace, template)
    return None if unresolved else result


def find_functions(value: Any, function: str) -> Iterator[Any]:
    """Yield the arguments of every occurrence of ``function`` in ``value``."""
    if isinstance(value, dict):
        for key, item in value.items():
            if key == function:
                yield item
            yield from find_functions(item, function)
    elif isinstance(value, list):
        for item in value:
            yield from find_functions(item, function)


def referenced_names(value: Any) -> Set[str]:
    """Logical names referenced through Ref, Fn::GetAtt and Fn::Sub variables."""
    names: Set[str] = set()

    for args in find_functions(value, "Ref"):
        if isinstance(args, str):
            names.add(args)

    for args in find_functions(value, "Fn::GetAtt"):
        if isinstance(args, list) and args and isinstance(args[0], str):
            names.add(args[0])
        elif isinstance(args, str):
            names.add(args.split(".", 1)[0])

    for args in find_functions(value, "Fn::Sub"):
        template = args if isinstance(args, str) else (args[0] if isinstance(args, list) and args else None)
        local: List[str] = []
        if isinstance(args, list) and len(args) == 2 and isinstance(args[1], dict):
            local = list(args[1].keys())
        if isinstance(template, str):
            for match in SUB_VARIABLE.finditer(template):
                name = match.group(1)
                if name.startswith("!") or name in local:
                    continue
                names.add(name.split(".", 1)[0])

    return {name for name in names if name not in PSEUDO_PARAMETERS}
