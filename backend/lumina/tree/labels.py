"""Hierarchical branch labels: "1", "1.a", "1.a.1", "1.b", ...

Segments alternate between numerals and letters by depth. Children of a
label ending in a digit are lettered; children of a label ending in a
letter are numbered. The root is always "1".
"""

ROOT_LABEL = "1"
SEPARATOR = "."


def letter_from_index(index: int) -> str:
    """0 -> "a", 25 -> "z", 26 -> "aa", 27 -> "ab" (bijective base 26)."""
    if index < 0:
        raise ValueError(f"Sibling index must be non-negative: {index}")
    letters = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("a") + rem) + letters
    return letters


def hierarchical_label(parent_label: str | None, sibling_count: int) -> str:
    """Label for a new child of ``parent_label``.

    ``sibling_count`` must be the number of children the parent has before
    the new child is registered.
    """
    if parent_label is None:
        return ROOT_LABEL
    if sibling_count < 0:
        raise ValueError(f"Sibling count must be non-negative: {sibling_count}")
    if "a" <= parent_label[-1:] <= "z":
        return f"{parent_label}{SEPARATOR}{sibling_count + 1}"
    return f"{parent_label}{SEPARATOR}{letter_from_index(sibling_count)}"


def label_depth(label: str) -> int:
    """Depth of a label: the number of separators ("1" is depth 0)."""
    return label.count(SEPARATOR)
