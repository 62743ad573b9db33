"""
Attribute comparison between stored and directory values.

The comparison is driven by the directory's attributes only: an attribute
present in the database but missing from the directory is never reported.
Removing an attribute in the directory therefore does not clear the stored
value. This asymmetry is intentional and covered by tests.
"""

from typing import Dict, Iterator, Optional, Tuple


def changed_attributes(stored: Dict[str, str],
                       fetched: Dict[str, str]) -> Iterator[Tuple[str, Optional[str], str]]:
    """
    Yield ``(name, old, new)`` for every directory attribute that differs.

    ``old`` is None when the attribute is not stored at all. Values are
    compared as exact strings.
    """
    for name, new in fetched.items():
        old = stored.get(name)
        if name not in stored or old != new:
            yield name, old, new


def user_changed(stored: Dict[str, str], fetched: Dict[str, str]) -> bool:
    """Return True if any directory attribute differs from the stored value."""
    return any(True for _ in changed_attributes(stored, fetched))
