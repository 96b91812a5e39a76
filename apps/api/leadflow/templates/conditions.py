from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, model_validator


class RangeCondition(BaseModel):
    type: Literal["range"] = "range"
    field: str = Field(min_length=1)
    min: float | None = None
    max: float | None = None
    weight: float = Field(default=1.0, ge=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "RangeCondition":
        if self.min is None and self.max is None:
            raise ValueError("range condition needs min or max")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min must be <= max")
        return self


class EqualsCondition(BaseModel):
    type: Literal["equals"] = "equals"
    field: str = Field(min_length=1)
    value: Any
    weight: float = Field(default=1.0, ge=0)


class ContainsCondition(BaseModel):
    type: Literal["contains"] = "contains"
    field: str = Field(min_length=1)
    value: str = Field(min_length=1)
    weight: float = Field(default=1.0, ge=0)


class RecencyCondition(BaseModel):
    type: Literal["recency"] = "recency"
    field: str = Field(min_length=1)
    days: float = Field(ge=0)
    weight: float = Field(default=1.0, ge=0)


RuleCondition = Annotated[
    RangeCondition | EqualsCondition | ContainsCondition | RecencyCondition,
    Field(discriminator="type"),
]

_rule_condition_list_adapter = TypeAdapter(list[RuleCondition])

_PREDICATE_KEYS = ("min", "max", "equals", "contains", "days")


def _from_legacy_entry(field_name: str, raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {"type": "equals", "field": field_name, "value": raw}

    weight = raw.get("weight", 1.0)
    present = [key for key in _PREDICATE_KEYS if key in raw]
    if not present:
        raise ValueError(f"condition for {field_name} has no predicate")
    if set(present) <= {"min", "max"}:
        return {"type": "range", "field": field_name, "min": raw.get("min"), "max": raw.get("max"), "weight": weight}
    if len(present) > 1:
        raise ValueError(f"condition for {field_name} mixes predicates: {', '.join(present)}")

    key = present[0]
    if key == "equals":
        return {"type": "equals", "field": field_name, "value": raw["equals"], "weight": weight}
    if key == "contains":
        return {"type": "contains", "field": field_name, "value": raw["contains"], "weight": weight}
    return {"type": "recency", "field": field_name, "days": raw["days"], "weight": weight}


def parse_rule_conditions(value: Any) -> list[RangeCondition | EqualsCondition | ContainsCondition | RecencyCondition]:
    """Validate rule conditions into the tagged form.

    Accepts either a list of tagged conditions or the field-keyed mapping
    ``{"score": {"min": 70, "weight": 2}, "source": {"equals": "zillow"}}``.
    """
    if isinstance(value, dict):
        value = [_from_legacy_entry(str(name), raw) for name, raw in value.items()]
    if not isinstance(value, list) or not value:
        raise ValueError("conditions must be a non-empty list or mapping")
    return _rule_condition_list_adapter.validate_python(value)


def dump_rule_conditions(conditions: list[Any]) -> list[dict[str, Any]]:
    return [condition.model_dump(mode="json") for condition in conditions]


def resolve_field(path: str, *sources: dict[str, Any]) -> Any:
    for source in sources:
        current: Any = source
        for key in path.split("."):
            if not isinstance(current, dict):
                current = None
                break
            current = current.get(key)
        if current is not None:
            return current
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def condition_matches(condition: Any, value: Any, *, now: datetime) -> bool:
    match condition:
        case RangeCondition(min=low, max=high):
            number = _as_number(value)
            if number is None:
                return False
            if low is not None and number < low:
                return False
            return high is None or number <= high
        case EqualsCondition(value=expected):
            return value == expected
        case ContainsCondition(value=needle):
            if isinstance(value, str):
                return needle in value
            if isinstance(value, (list, tuple, set)):
                return needle in value
            return False
        case RecencyCondition(days=days):
            moment = _as_datetime(value)
            if moment is None:
                return False
            return (now - moment).total_seconds() / 86400 <= days
        case _:
            raise TypeError(f"unknown condition: {condition!r}")


def score_conditions(
    conditions: list[Any],
    lead: dict[str, Any],
    context: dict[str, Any],
    *,
    now: datetime | None = None,
) -> float:
    moment = now or datetime.now(timezone.utc)
    score = 0.0
    for condition in conditions:
        value = resolve_field(condition.field, lead, context)
        if condition_matches(condition, value, now=moment):
            score += condition.weight
    return score
