"""
Effective mapping compilation
"""

from typing import Dict, Iterable, List

from models import Group


def compile_effective_mapping(groups: List[Group], active_group_ids: Iterable[str]) -> Dict[str, str]:
    """
    Flatten active groups into an ordered domain -> ip mapping.

    Groups and hosts are visited in store order; inactive groups and disabled
    hosts are skipped. When a domain occurs more than once the last entry
    visited wins, while the key keeps the position of its first occurrence.
    """
    active = set(active_group_ids)
    mapping = {}

    for group in groups:
        if group.id not in active:
            continue
        for host in group.hosts:
            if not host.enabled:
                continue
            mapping[host.domain.lower()] = host.ip

    return mapping
