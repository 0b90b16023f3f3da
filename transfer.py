"""
Hosts-file and JSON import/export
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from exceptions import NotFoundError, ValidationError
from models import Group, StoreDocument
from validation import parse_hosts_line


EXPORT_VERSION = "1.0.0"


def parse_hosts_text(text: str) -> Tuple[List[Tuple[int, str, str]], List[Dict[str, Any]]]:
    """
    Parse hosts-file text.

    Returns ``(entries, invalid)`` where entries are ``(line_number, ip, domain)``
    triples (one per alias) and invalid lists the rejected lines with a reason.
    """
    entries, invalid = [], []
    for index, line in enumerate((text or "").splitlines(), start=1):
        try:
            parsed = parse_hosts_line(line)
        except ValidationError as e:
            invalid.append({"line": index, "content": line.strip(), "reason": str(e)})
            continue
        if parsed is None:
            continue
        ip, domains = parsed
        for domain in domains:
            entries.append((index, ip, domain))
    return entries, invalid


def export_hosts_text(groups: List[Group], group_id: str = None, include_disabled: bool = False,
                      include_comments: bool = True, include_group_headers: bool = True,
                      export_date: Optional[str] = None) -> str:
    """Render groups as hosts-file text, entries sorted by domain"""
    if group_id:
        selected = [g for g in groups if g.id == group_id]
        if not selected:
            raise NotFoundError(f"Group {group_id} not found")
    else:
        selected = groups

    lines = []
    if include_comments:
        lines.append("# hosts-router export")
        lines.append(f"# Exported: {export_date or datetime.now().date().isoformat()}")

    for group in selected:
        if include_group_headers:
            lines.append(f"# {group.name}")
        for host in sorted(group.hosts, key=lambda h: h.domain):
            if not host.enabled:
                if not include_disabled:
                    continue
                if include_comments:
                    lines.append(f"# disabled: {host.ip} {host.domain}")
                    continue
            lines.append(f"{host.ip} {host.domain}")
        lines.append("")

    return "\n".join(lines) + ("\n" if lines and lines[-1] != "" else "")


def export_json(document: StoreDocument, group_id: str = None) -> Dict[str, Any]:
    """Full-configuration or single-group JSON export"""
    exported_at = datetime.now().isoformat()
    if group_id:
        group = document.find_group(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return {
            "version": EXPORT_VERSION,
            "exportDate": exported_at,
            "type": "single-group",
            "hostsGroups": [group.to_dict()],
            "activeGroups": [group_id] if group_id in document.active_groups else []
        }

    return {
        "version": EXPORT_VERSION,
        "exportDate": exported_at,
        "type": "full-config",
        "hostsGroups": [g.to_dict() for g in document.groups],
        "activeGroups": list(document.active_groups),
        "socketProxy": document.proxy.to_dict()
    }


def validate_json_import(data: Any):
    """Raise ValidationError unless data looks like an export document"""
    if not isinstance(data, dict) or not isinstance(data.get("hostsGroups"), list):
        raise ValidationError("Import document must contain a hostsGroups list")
    for group in data["hostsGroups"]:
        if not isinstance(group, dict) or not group.get("name") or not isinstance(group.get("hosts"), list):
            raise ValidationError("Every imported group needs a name and a hosts list")
