"""Parsing of CloudFormation template bodies (YAML short form or JSON)."""

import json
from typing import Any, Dict

import yaml

from cfn_deploy.utils.errors import TemplateError


class CloudFormationLoader(yaml.SafeLoader):
    """SafeLoader that understands CloudFormation short-form intrinsic tags."""


# AWSTemplateFormatVersion must stay a string, not a datetime.date
CloudFormationLoader.yaml_implicit_resolvers = {
    first: [resolver for resolver in resolvers if resolver[0] != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_intrinsic(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Dict[str, Any]:
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix in ("Ref", "Condition"):
        return {tag_suffix: value}
    if tag_suffix == "GetAtt" and isinstance(value, str):
        value = value.split(".", 1)
    return {f"Fn::{tag_suffix}": value}


CloudFormationLoader.add_multi_constructor("!", _construct_intrinsic)


def parse_template(body: str, source: str = "<template>") -> Dict[str, Any]:
    """Parse a template body into its long-form dictionary.

    Args:
        body: Raw template text
        source: Name used in error messages

    Raises:
        TemplateError: If the body is not a valid template document
    """
    stripped = body.lstrip()
    try:
        if stripped.startswith("{"):
            document = json.loads(body)
        else:
            document = yaml.load(body, Loader=CloudFormationLoader)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise TemplateError(f"Failed to parse template {source}: {e}", cause=e)

    if not isinstance(document, dict):
        raise TemplateError(f"Template {source} must be a mapping")
    if not isinstance(document.get("Resources"), dict) or not document["Resources"]:
        raise TemplateError(f"Template {source} must declare at least one resource")

    return document
