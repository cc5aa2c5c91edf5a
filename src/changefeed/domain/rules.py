"""Declarative routing rules for change notifications."""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


def resolve_field(document: Dict[str, Any], path: str) -> Tuple[bool, Any]:
    """Resolve a dotted path; returns (present, value)."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


class FieldMatch(BaseModel):
    """
    A single condition on one field of a notification.

    ``field`` is a dotted path such as ``change_type`` or
    ``attributes.event_type``. Every condition given must hold.
    """
    field: str
    equals: Any = None
    prefix: Optional[str] = None
    any_of: Optional[List[Any]] = None
    exists: Optional[bool] = None

    @property
    def has_equals(self) -> bool:
        # equals=None is a real condition, so presence is read from the fields set
        return "equals" in self.model_fields_set

    @model_validator(mode="after")
    def _has_condition(self):
        if (
            not self.has_equals
            and self.prefix is None
            and self.any_of is None
            and self.exists is None
        ):
            raise ValueError(f"Match on '{self.field}' needs one of equals, prefix, any_of, exists")
        return self

    def matches(self, document: Dict[str, Any]) -> bool:
        present, value = resolve_field(document, self.field)

        if self.exists is not None and present != self.exists:
            return False
        if self.has_equals and (not present or value != self.equals):
            return False
        if self.prefix is not None and (not isinstance(value, str) or not value.startswith(self.prefix)):
            return False
        if self.any_of is not None and (not present or value not in self.any_of):
            return False
        return True


class RoutingRule(BaseModel):
    """Destinations for notifications matching all of ``match``. No conditions matches everything."""
    name: str
    destinations: List[str] = Field(min_length=1)
    match: List[FieldMatch] = Field(default_factory=list)
    group_by: Optional[str] = None

    def matches(self, document: Dict[str, Any]) -> bool:
        return all(condition.matches(document) for condition in self.match)

    def group_key_for(self, document: Dict[str, Any]) -> Optional[str]:
        if not self.group_by:
            return None
        present, value = resolve_field(document, self.group_by)
        return str(value) if present and value is not None else None


def load_rules(raw_rules: List[Dict[str, Any]]) -> List[RoutingRule]:
    return [RoutingRule.model_validate(rule) for rule in raw_rules]
