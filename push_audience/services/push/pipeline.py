"""
Evaluation of compiled audience steps against user documents.

Steps are `{"$match": query}` and `{"$project": projection}` stages using the
document query dialect the audience filters are written in: dotted paths,
implicit equality (with array membership), `$or`/`$and`/`$nor` and the field
operators in `_OPERATORS`.
"""

from typing import Any, Callable, Dict, List, Optional


class _Missing:
    def __repr__(self):
        return "MISSING"


MISSING: Any = _Missing()


def get_path(doc: Any, path: str) -> Any:
    """Value at a dotted path or MISSING"""
    current = doc
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def _equals(value: Any, expected: Any) -> bool:
    if value is MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(value: Any, arg: Any, check: Callable[[Any, Any], bool]) -> bool:
    if value is MISSING or value is None:
        return False
    try:
        return check(value, arg)
    except TypeError:
        return False


def _elem_match(value: Any, arg: Dict[str, Any]) -> bool:
    if not isinstance(value, list):
        return False
    for item in value:
        if isinstance(item, (dict, list)) and not _is_operator_doc(arg):
            item_doc = item if isinstance(item, dict) else dict(
                (str(i), v) for i, v in enumerate(item)
            )
            if matches(item_doc, arg):
                return True
        elif _match_field(item, arg):
            return True
    return False


class _ValueSet(list):
    """`$in` / `$nin` argument with its hashable members indexed"""

    def __init__(self, values):
        super().__init__(values)
        self.hashed = set(v for v in self if not isinstance(v, (dict, list)))
        self.unhashable = [v for v in self if isinstance(v, (dict, list))]

    def contains(self, value: Any) -> bool:
        if isinstance(value, list):
            return any(_equals(value, a) for a in self)
        if value is MISSING:
            return None in self.hashed
        if isinstance(value, dict):
            return any(_equals(value, a) for a in self.unhashable)
        return value in self.hashed


def _in(value: Any, arg: Any) -> bool:
    if isinstance(arg, _ValueSet):
        return arg.contains(value)
    return any(_equals(value, a) for a in arg)


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$eq": _equals,
    "$ne": lambda value, arg: not _equals(value, arg),
    "$exists": lambda value, arg: (value is not MISSING) == bool(arg),
    "$in": _in,
    "$nin": lambda value, arg: not _in(value, arg),
    "$gt": lambda value, arg: _compare(value, arg, lambda a, b: a > b),
    "$gte": lambda value, arg: _compare(value, arg, lambda a, b: a >= b),
    "$lt": lambda value, arg: _compare(value, arg, lambda a, b: a < b),
    "$lte": lambda value, arg: _compare(value, arg, lambda a, b: a <= b),
    "$elemMatch": _elem_match,
    "$not": lambda value, arg: not _match_field(value, arg),
}


def _is_operator_doc(cond: Any) -> bool:
    return (
        isinstance(cond, dict)
        and bool(cond)
        and all(isinstance(k, str) and k.startswith("$") for k in cond)
    )


def _match_field(value: Any, cond: Any) -> bool:
    if _is_operator_doc(cond):
        for op, arg in cond.items():
            check = _OPERATORS.get(op)
            if check is None:
                raise ValueError(f"Unsupported query operator {op}")
            if not check(value, arg):
                return False
        return True
    return _equals(value, cond)


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    """Whether a document satisfies a restriction"""
    for key, cond in query.items():
        if key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, q) for q in cond):
                return False
        elif key == "$nor":
            if any(matches(doc, q) for q in cond):
                return False
        elif key.startswith("$"):
            raise ValueError(f"Unsupported query operator {key}")
        elif not _match_field(get_path(doc, key), cond):
            return False
    return True


def project(doc: Dict[str, Any], projection: Dict[str, Any]) -> Dict[str, Any]:
    """Inclusion projection over dotted paths"""
    result: Dict[str, Any] = {}
    for path, include in projection.items():
        if not include:
            continue
        value = get_path(doc, path)
        if value is not MISSING:
            set_path(result, path, value)
    return result


def run_steps(
    doc: Dict[str, Any], steps: List[Dict[str, Any]]
) -> Optional[Dict[str, Any]]:
    """Push one document through the steps, None when a restriction drops it"""
    current = doc
    for step in steps:
        if "$match" in step:
            if not matches(current, step["$match"]):
                return None
        elif "$project" in step:
            current = project(current, step["$project"])
        else:
            raise ValueError(f"Unsupported pipeline stage {list(step)}")
    return current


def _prepare(key: str, value: Any) -> Any:
    if key in ("$in", "$nin") and isinstance(value, list):
        return _ValueSet(value)
    if key in ("$or", "$and", "$nor") and isinstance(value, list):
        return [_prepare_query(q) for q in value]
    if isinstance(value, dict):
        return _prepare_query(value)
    return value


def _prepare_query(query: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _prepare(key, value) for key, value in query.items()}


def prepare_steps(steps: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Copy of the steps ready to be run against many documents.

    Membership lists of `$in` / `$nin` are indexed once here instead of being
    scanned for every document.
    """
    return [
        {"$match": _prepare_query(step["$match"])} if "$match" in step else step
        for step in steps
    ]
