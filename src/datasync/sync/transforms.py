"""
Record transformations applied to source fields before field mapping.

A transformation is either a callable taking and returning the field dict,
or a (name, fields) pair naming one of the built-ins below. Built-ins leave
values they cannot interpret untouched.
"""
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from datasync.errors import RecordValidationError

Record = Dict[str, Any]
Transformation = Any  # Callable[[Record], Record] or (name, [fields])

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%Y/%m/%d")
_TRUE = {"true", "yes", "y", "1"}
_FALSE = {"false", "no", "n", "0"}


def _normalize_date(value: Any) -> Any:
    if not isinstance(value, str) or not value.strip():
        return value
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise RecordValidationError([{"field": None, "message": f"unparseable date {value!r}"}])


def _normalize_boolean(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    if isinstance(value, int) and not isinstance(value, bool):
        return value != 0
    return value


def _normalize_number(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip().replace(",", "").lstrip("£$€")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return value
    return int(number) if number.is_integer() and "." not in text else number


def _trim(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _per_field(fn: Callable[[Any], Any]) -> Callable[[Record, Sequence[str]], Record]:
    def apply(record: Record, fields: Sequence[str]) -> Record:
        out = dict(record)
        for name in fields:
            if name in out and out[name] is not None:
                try:
                    out[name] = fn(out[name])
                except RecordValidationError as exc:
                    raise RecordValidationError(
                        [{"field": name, "message": e["message"]} for e in exc.errors]
                    ) from exc
        return out

    return apply


def remove_empty_fields(record: Record, fields: Optional[Sequence[str]] = None) -> Record:
    names = set(fields) if fields else set(record)
    return {
        k: v
        for k, v in record.items()
        if k not in names or not _is_empty(v)
    }


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


BUILTINS: Dict[str, Callable[[Record, Sequence[str]], Record]] = {
    "normalize_dates": _per_field(_normalize_date),
    "normalize_booleans": _per_field(_normalize_boolean),
    "normalize_numbers": _per_field(_normalize_number),
    "trim_strings": _per_field(_trim),
    "remove_empty_fields": remove_empty_fields,
}


def validate_transformations(transformations: Iterable[Transformation]) -> List[Transformation]:
    checked = []
    for t in transformations:
        if callable(t):
            checked.append(t)
            continue
        if isinstance(t, (tuple, list)) and len(t) == 2 and t[0] in BUILTINS:
            checked.append((t[0], list(t[1] or [])))
            continue
        raise ValueError(f"invalid transformation: {t!r}")
    return checked


def apply_transformations(record: Record, transformations: Iterable[Transformation]) -> Record:
    out = dict(record)
    for t in transformations:
        if callable(t):
            out = t(out)
        else:
            name, fields = t
            out = BUILTINS[name](out, fields)
    return out
