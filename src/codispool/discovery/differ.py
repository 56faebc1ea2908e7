"""Membership diff between two proxy listings."""

from typing import List, Sequence, Tuple


def diff_membership(
    previous: Sequence[str],
    current: Sequence[str],
) -> Tuple[List[str], List[str]]:
    """
    Compute which proxies joined and which left.

    Args:
        previous: Proxy ids from the last listing
        current: Proxy ids from the new listing

    Returns:
        ``(to_add, to_remove)``, each in the order of the input it came from
    """
    previous_set = set(previous)
    current_set = set(current)

    to_add = [proxy for proxy in current if proxy not in previous_set]
    to_remove = [proxy for proxy in previous if proxy not in current_set]
    return to_add, to_remove
