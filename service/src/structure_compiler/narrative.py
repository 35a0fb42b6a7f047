from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from .model.cardinality import Cardinality
from .model.mapping import CardinalityRule, ElementMapping, FieldToFieldRule, FieldToURLRule, FixedValueRule

FILES_FOLDER = Path(__file__).parent / "files"
TEMPLATE_NAME = "narrative.html.j2"

_env = Environment(loader=FileSystemLoader(FILES_FOLDER), autoescape=True)


def format_cardinality(card: Cardinality) -> str:
    return str(card)


def slice_commands_as_text(rule: FieldToFieldRule) -> str:
    commands = []
    if rule.slice_at is not None:
        commands.append(f"slice at = {rule.slice_at}")
    if rule.slice_on is not None:
        commands.append(f"slice on = {rule.slice_on}")
        if rule.slice_on_type != "value":
            commands.append(f"slice on type = {rule.slice_on_type}")
    if rule.slice_strategy is not None:
        commands.append(f"slice strategy = {rule.slice_strategy}")
    return f" ({'; '.join(commands)})" if commands else ""


def rule_as_text(rule) -> str:
    if isinstance(rule, FieldToFieldRule):
        return f"{'.'.join(i.name for i in rule.source_path)} maps to {rule.target}{slice_commands_as_text(rule)}"
    if isinstance(rule, FieldToURLRule):
        return f"{'.'.join(i.name for i in rule.source_path)} maps to {rule.target_url}"
    if isinstance(rule, CardinalityRule):
        return f"constrain {rule.target} to {format_cardinality(rule.card)}"
    if isinstance(rule, FixedValueRule):
        return f"fix {rule.target} to {rule.value}"
    raise ValueError(f"unsupported mapping rule {type(rule).__name__}")


def mapping_as_text(mapping: ElementMapping) -> list[str]:
    return [f"{mapping.identifier.name} maps to {mapping.target_item}:", *(f"  {rule_as_text(r)}" for r in mapping.rules)]


def render(title: str, description: str | None = None, mapping: ElementMapping | None = None) -> dict:
    """Generated narrative for an artifact, all values are escaped."""
    template = _env.get_template(TEMPLATE_NAME)
    rules = mapping_as_text(mapping) if mapping is not None and mapping.rules else []
    div = template.render(title=title, description=description, rules=rules)
    return {"status": "generated", "div": div}
