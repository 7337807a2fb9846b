"""
Record validation rules checked after transformations, before field mapping.

A rule is a (name, spec) pair or a bare callable, which is shorthand for
("custom_validation", fn). Values that are missing or None are only
checked by required_fields; every other rule skips them.

    ("field_types",   {"offence_fine": "number"})
    ("field_formats", {"regulator_id": r"^HSE-\\d+$"})
    ("field_lengths", {"offender_name": {"min": 1, "max": 200}})
    ("field_ranges",  {"offence_fine": {"min": 0}})
    ("allowed_values", {"agency_code": ["hse", "ea"]})
    ("custom_validation", lambda record: record.get("a") != record.get("b"))

A custom validation returns True to pass or False to fail; any other
result fails the record as invalid.
"""
import re
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping

from datasync.errors import RecordValidationError

Rule = Any  # (name, spec) or Callable[[dict], bool]
Failure = Dict[str, Any]


def _is_integer(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value):
    return _is_integer(value) or isinstance(value, float)


TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "integer": _is_integer,
    "float": lambda v: isinstance(v, float),
    "number": _is_number,
    "boolean": lambda v: isinstance(v, bool),
    "list": lambda v: isinstance(v, list),
    "map": lambda v: isinstance(v, dict),
    "date": lambda v: isinstance(v, date),
}


def _field_types(record: Mapping[str, Any], spec: Mapping[str, str]) -> List[Failure]:
    failures = []
    for name, expected in spec.items():
        value = record.get(name)
        if value is not None and not TYPE_CHECKS[expected](value):
            failures.append({
                "field": name,
                "rule": "field_types",
                "message": f"Field '{name}' has incorrect type",
                "expected": expected,
                "actual": type(value).__name__,
            })
    return failures


def _field_formats(record: Mapping[str, Any], spec: Mapping[str, Any]) -> List[Failure]:
    failures = []
    for name, pattern in spec.items():
        value = record.get(name)
        if isinstance(value, str) and not re.search(pattern, value):
            failures.append({
                "field": name,
                "rule": "field_formats",
                "message": f"Field '{name}' does not match required format",
            })
    return failures


def _field_lengths(record: Mapping[str, Any], spec: Mapping[str, Mapping[str, int]]) -> List[Failure]:
    failures = []
    for name, bounds in spec.items():
        value = record.get(name)
        if not isinstance(value, str):
            continue
        low, high = bounds.get("min"), bounds.get("max")
        if low is not None and len(value) < low:
            message = f"Field '{name}' is too short (minimum: {low})"
        elif high is not None and len(value) > high:
            message = f"Field '{name}' is too long (maximum: {high})"
        else:
            continue
        failures.append({"field": name, "rule": "field_lengths", "message": message, "length": len(value)})
    return failures


def _field_ranges(record: Mapping[str, Any], spec: Mapping[str, Mapping[str, float]]) -> List[Failure]:
    failures = []
    for name, bounds in spec.items():
        value = record.get(name)
        if not _is_number(value):
            continue
        low, high = bounds.get("min"), bounds.get("max")
        if low is not None and value < low:
            message = f"Field '{name}' is below minimum value (minimum: {low})"
        elif high is not None and value > high:
            message = f"Field '{name}' is above maximum value (maximum: {high})"
        else:
            continue
        failures.append({"field": name, "rule": "field_ranges", "message": message, "value": value})
    return failures


def _allowed_values(record: Mapping[str, Any], spec: Mapping[str, Iterable[Any]]) -> List[Failure]:
    failures = []
    for name, allowed in spec.items():
        value = record.get(name)
        if value is not None and value not in allowed:
            failures.append({
                "field": name,
                "rule": "allowed_values",
                "message": f"Field '{name}' has invalid value",
                "value": value,
            })
    return failures


def _custom_validation(record: Mapping[str, Any], fn: Callable[[Dict[str, Any]], Any]) -> List[Failure]:
    try:
        outcome = fn(dict(record))
    except Exception as exc:
        message = f"Validation rule raised {type(exc).__name__}: {exc}"
        return [{"field": None, "rule": "custom_validation", "message": message}]
    if outcome is True:
        return []
    if outcome is False:
        return [{"field": None, "rule": "custom_validation", "message": "Custom validation failed"}]
    return [{"field": None, "rule": "custom_validation", "message": "Invalid validation result", "result": repr(outcome)}]


RULES: Dict[str, Callable[[Mapping[str, Any], Any], List[Failure]]] = {
    "field_types": _field_types,
    "field_formats": _field_formats,
    "field_lengths": _field_lengths,
    "field_ranges": _field_ranges,
    "allowed_values": _allowed_values,
    "custom_validation": _custom_validation,
}


def _check_spec(name: str, spec: Any) -> Any:
    if name == "custom_validation":
        if not callable(spec):
            raise ValueError("custom_validation needs a callable")
        return spec
    if not isinstance(spec, Mapping):
        raise ValueError(f"{name} needs a field mapping")
    spec = dict(spec)
    if name == "field_types":
        unknown = sorted(set(spec.values()) - set(TYPE_CHECKS))
        if unknown:
            raise ValueError(f"unknown field types: {unknown}")
    elif name == "field_formats":
        try:
            spec = {field: re.compile(pattern) for field, pattern in spec.items()}
        except (re.error, TypeError) as exc:
            raise ValueError(f"invalid field format: {exc}") from exc
    elif name in ("field_lengths", "field_ranges"):
        for field, bounds in spec.items():
            if not isinstance(bounds, Mapping) or not set(bounds) <= {"min", "max"}:
                raise ValueError(f"{name} for {field} needs min and/or max")
    return spec


def validate_rules(rules: Iterable[Rule]) -> List[Rule]:
    """Normalize configured rules; raises ValueError on an unusable one."""
    checked = []
    for rule in rules:
        if callable(rule):
            checked.append(("custom_validation", rule))
            continue
        if isinstance(rule, (tuple, list)) and len(rule) == 2 and rule[0] in RULES:
            checked.append((rule[0], _check_spec(rule[0], rule[1])))
            continue
        raise ValueError(f"invalid validation rule: {rule!r}")
    return checked


def collect_failures(record: Mapping[str, Any], rules: Iterable[Rule]) -> List[Failure]:
    failures: List[Failure] = []
    for name, spec in validate_rules(rules):
        failures.extend(RULES[name](record, spec))
    return failures


def validate_record(record: Mapping[str, Any], rules: Iterable[Rule]) -> None:
    """Raises RecordValidationError listing every rule the record breaks."""
    failures = collect_failures(record, rules)
    if failures:
        raise RecordValidationError(failures)
