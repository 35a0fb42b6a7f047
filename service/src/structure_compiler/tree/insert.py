"""Ordered insertion of elements into a flat, pre-order element list.

A node's descendants and slices always stay contiguous right after the node,
so the list can be treated as a tree without storing child links.
"""

import re
from collections.abc import Sequence


def _element_id(element) -> str:
    return element["id"] if isinstance(element, dict) else element.id


def _is_descendant(element_id: str, ancestor_id: str) -> bool:
    return re.fullmatch(rf"{re.escape(ancestor_id)}([.:].+)?", element_id) is not None


def _is_choice_narrowing(element_id: str, choice_id: str) -> bool:
    if not choice_id.endswith("[x]"):
        return False
    return re.fullmatch(rf"{re.escape(choice_id[:-3])}[A-Z][^.]+(\..+)?", element_id) is not None


def intended_index_in_list(element_id: str, ids: Sequence[str]) -> int:
    last_match_id = ""
    for index, current_id in enumerate(ids):
        if _is_descendant(element_id, current_id) or _is_choice_narrowing(element_id, current_id):
            last_match_id = current_id
            continue

        if len(element_id) > len(last_match_id) and element_id[len(last_match_id)] == ".":
            # direct child: stop after the last of the parent's dotted descendants
            stop = re.fullmatch(rf"{re.escape(last_match_id)}(\..+)?", current_id) is None
        else:
            stop = not _is_descendant(current_id, last_match_id)

        if stop:
            return index

    return len(ids)


def insert_element_in_list(element, elements: list) -> int:
    index = intended_index_in_list(_element_id(element), [_element_id(e) for e in elements])
    elements.insert(index, element)
    return index
