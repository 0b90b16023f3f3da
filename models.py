"""
Data models for the hosts router
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


SCHEMA_VERSION = 1
UPDATE_ACTION = "updateProxySettings"


def new_id() -> str:
    return uuid.uuid4().hex


class ProxyProtocol(Enum):
    """Forwarding proxy protocols"""
    HTTP = "HTTP"
    HTTPS = "HTTPS"
    SOCKS4 = "SOCKS4"
    SOCKS5 = "SOCKS5"
    SOCKS = "SOCKS"

    @property
    def is_socks(self) -> bool:
        return self in (ProxyProtocol.SOCKS4, ProxyProtocol.SOCKS5, ProxyProtocol.SOCKS)


@dataclass
class HostEntry:
    """A single domain -> IP override"""
    ip: str
    domain: str
    enabled: bool = True
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "ip": self.ip,
            "domain": self.domain,
            "enabled": self.enabled
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "HostEntry":
        return cls(
            id=str(data.get("id") or new_id()),
            ip=str(data.get("ip", "")),
            domain=str(data.get("domain", "")),
            enabled=bool(data.get("enabled", True))
        )


@dataclass
class Group:
    """A named, toggleable collection of host entries"""
    name: str
    hosts: List[HostEntry] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    def find_host(self, host_id: str) -> Optional[HostEntry]:
        for host in self.hosts:
            if host.id == host_id:
                return host
        return None

    def has_pair(self, ip: str, domain: str, exclude_id: str = None) -> bool:
        """True if another entry already maps this exact (ip, domain) pair"""
        return any(
            h.ip == ip and h.domain == domain and h.id != exclude_id
            for h in self.hosts
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "hosts": [h.to_dict() for h in self.hosts]
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Group":
        return cls(
            id=str(data.get("id") or new_id()),
            name=str(data.get("name", "")),
            hosts=[HostEntry.from_dict(h) for h in data.get("hosts") or [] if isinstance(h, dict)]
        )


@dataclass
class ProxyAuth:
    enabled: bool = False
    username: str = ""
    password: str = ""

    def to_dict(self) -> Dict:
        return {
            "enabled": self.enabled,
            "username": self.username,
            "password": self.password
        }


@dataclass
class ForwardingProxyConfig:
    """Upstream proxy used for traffic no override matches"""
    host: str = ""
    port: Optional[int] = None
    enabled: bool = False
    protocol: ProxyProtocol = ProxyProtocol.SOCKS5
    auth: ProxyAuth = field(default_factory=ProxyAuth)
    bypass_list: List[str] = field(default_factory=list)

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and self.host and self.port)

    def to_dict(self) -> Dict:
        return {
            "host": self.host,
            "port": self.port,
            "enabled": self.enabled,
            "protocol": self.protocol.value,
            "auth": self.auth.to_dict(),
            "bypassList": list(self.bypass_list)
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ForwardingProxyConfig":
        data = data or {}
        auth = data.get("auth") or {}
        port = data.get("port")
        if isinstance(port, str):
            port = int(port) if port.strip().isdigit() else None
        try:
            protocol = ProxyProtocol(str(data.get("protocol") or "SOCKS5").upper())
        except ValueError:
            protocol = ProxyProtocol.SOCKS5
        bypass = data.get("bypassList")
        return cls(
            host=str(data.get("host") or "").strip(),
            port=port or None,
            enabled=bool(data.get("enabled", False)),
            protocol=protocol,
            auth=ProxyAuth(
                enabled=bool(auth.get("enabled", False)),
                username=str(auth.get("username") or ""),
                password=str(auth.get("password") or "")
            ),
            bypass_list=[str(b) for b in bypass] if isinstance(bypass, list) else []
        )


@dataclass
class StoreDocument:
    """The persisted document shared by the supervisor and UI contexts"""
    groups: List[Group] = field(default_factory=list)
    active_groups: List[str] = field(default_factory=list)
    proxy: ForwardingProxyConfig = field(default_factory=ForwardingProxyConfig)
    show_add_group_form: bool = False
    revision: int = 0
    schema_version: int = SCHEMA_VERSION

    def find_group(self, group_id: str) -> Optional[Group]:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None

    def to_dict(self) -> Dict:
        return {
            "schemaVersion": self.schema_version,
            "revision": self.revision,
            "hostsGroups": [g.to_dict() for g in self.groups],
            "activeGroups": list(self.active_groups),
            "socketProxy": self.proxy.to_dict(),
            "showAddGroupForm": self.show_add_group_form
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "StoreDocument":
        return cls(
            schema_version=int(data.get("schemaVersion", SCHEMA_VERSION)),
            revision=int(data.get("revision", 0)),
            groups=[Group.from_dict(g) for g in data.get("hostsGroups") or [] if isinstance(g, dict)],
            active_groups=[str(i) for i in data.get("activeGroups") or []],
            proxy=ForwardingProxyConfig.from_dict(data.get("socketProxy")),
            show_add_group_form=bool(data.get("showAddGroupForm", False))
        )


@dataclass
class ChangeEvent:
    """Store-level change notification"""
    revision: int
    source: str = "local"
    operation: Optional[str] = None


@dataclass
class ApplyResult:
    success: bool
    action: str = "apply"
    error: Optional[str] = None


@dataclass
class ImportResult:
    """Outcome of a bulk host import"""
    success: bool = False
    imported: int = 0
    skipped: int = 0
    duplicates: List[Dict[str, Any]] = field(default_factory=list)
    invalid: List[Dict[str, Any]] = field(default_factory=list)
    message: str = ""


@dataclass
class ActionResult:
    """Outcome of a user-triggered operation"""
    success: bool
    message: str = ""
