"""Cross-resource attribute references of the form ``${resource_id.output}``."""

import re
from typing import Any, Callable, List, Tuple

REFERENCE_PATTERN = re.compile(r"\$\{([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z0-9_-]+)\}")

# (resource_id, output_name)
Reference = Tuple[str, str]


def find_references(value: Any) -> List[Reference]:
    """Collect every reference in a value, in first-seen order.

    Strings are scanned directly; lists, tuples and dict values are walked
    recursively.
    """
    found: List[Reference] = []

    def walk(item: Any) -> None:
        if isinstance(item, str):
            for match in REFERENCE_PATTERN.finditer(item):
                ref = (match.group(1), match.group(2))
                if ref not in found:
                    found.append(ref)
        elif isinstance(item, dict):
            for nested in item.values():
                walk(nested)
        elif isinstance(item, (list, tuple)):
            for nested in item:
                walk(nested)

    walk(value)
    return found


def resolve_references(value: Any, lookup: Callable[[str, str], Any]) -> Any:
    """Return a copy of value with every reference replaced.

    A string consisting of exactly one reference takes the referenced value
    as-is (so lists and numbers survive); references embedded in longer
    strings are interpolated with ``str()``.

    Args:
        value: Attribute value to resolve
        lookup: Called with (resource_id, output_name); raises if unknown
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return lookup(whole.group(1), whole.group(2))
        return REFERENCE_PATTERN.sub(
            lambda m: str(lookup(m.group(1), m.group(2))), value
        )
    if isinstance(value, dict):
        return {key: resolve_references(nested, lookup) for key, nested in value.items()}
    if isinstance(value, list):
        return [resolve_references(nested, lookup) for nested in value]
    if isinstance(value, tuple):
        return tuple(resolve_references(nested, lookup) for nested in value)
    return value
