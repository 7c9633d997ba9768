from __future__ import annotations

from collections.abc import Sequence

from apm_hub.models import SearchParams, SearchRoute

WILDCARD = "*"
NEGATION = "!"


def match_label_value(accepted: str, value: str) -> bool:
    """Match a query label value against a comma separated list of accepted values.

    Elements are evaluated left to right and the first matching one wins:
    '*' matches anything, '!x' matches any value other than x, anything else
    must equal the value verbatim.
    """
    for element in accepted.split(","):
        if element == WILDCARD:
            return True
        if element.startswith(NEGATION):
            if value != element[len(NEGATION):]:
                return True
            continue
        if element == value:
            return True
    return False


def matches(route: SearchRoute, params: SearchParams) -> bool:
    """Return True when every non-empty field of the route matches the query.

    Route labels are a required subset: each configured key must be present on
    the query and satisfy its value list. Extra query labels are ignored.
    """
    if route.type and route.type.casefold() != (params.type or "").casefold():
        return False
    if route.id_prefix and not (params.id or "").startswith(route.id_prefix):
        return False
    for key, accepted in route.labels.items():
        value = params.labels.get(key)
        if value is None or not match_label_value(accepted, value):
            return False
    return True


def match_backend(routes: Sequence[SearchRoute], params: SearchParams) -> tuple[bool, bool]:
    """Return (matched, additive) for the first route that matches, in declaration order.

    A backend without routes never matches: routes are an explicit opt-in.
    """
    for route in routes:
        if matches(route, params):
            return True, route.is_additive
    return False, False
