"""
Input validation for host rules and forwarding proxy settings
"""

import ipaddress
import re
from typing import List, Optional, Tuple

from exceptions import ValidationError
from models import ForwardingProxyConfig


MAX_DOMAIN_LENGTH = 253
MAX_GROUP_NAME_LENGTH = 64

_LABEL_RE = re.compile(r'^(?!-)[a-z0-9_-]{1,63}(?<!-)$')


def is_valid_ip(ip: str) -> bool:
    """Dotted-quad IPv4 only; PAC directives cannot carry other forms safely"""
    if not isinstance(ip, str):
        return False
    try:
        ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return True


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().rstrip('.') if isinstance(domain, str) else ""


def is_valid_domain(domain: str) -> bool:
    domain = normalize_domain(domain)
    if not domain or len(domain) > MAX_DOMAIN_LENGTH:
        return False
    return all(_LABEL_RE.match(label) for label in domain.split('.'))


def is_valid_port(port) -> bool:
    if isinstance(port, bool):
        return False
    try:
        value = int(port)
    except (TypeError, ValueError):
        return False
    return 1 <= value <= 65535


def validate_host_rule(ip: str, domain: str) -> Tuple[str, str]:
    """Return the normalised (ip, domain) pair or raise ValidationError"""
    ip = ip.strip() if isinstance(ip, str) else ip
    if not is_valid_ip(ip):
        raise ValidationError(f"Invalid IPv4 address: {ip!r}")
    if not is_valid_domain(domain):
        raise ValidationError(f"Invalid domain: {domain!r}")
    return ip, normalize_domain(domain)


def validate_group_name(name: str) -> str:
    name = name.strip() if isinstance(name, str) else ""
    if not name:
        raise ValidationError("Group name must not be empty")
    if len(name) > MAX_GROUP_NAME_LENGTH:
        raise ValidationError(f"Group name longer than {MAX_GROUP_NAME_LENGTH} characters")
    return name


def normalize_bypass_rule(rule: str) -> Optional[str]:
    """
    Normalise one bypass entry.

    Accepts a domain, a domain with a leading "." or "*." (all three mean the
    domain and its subdomains) or an IPv4 literal. Returns None when invalid.
    """
    if not isinstance(rule, str):
        return None
    rule = rule.strip().lower()
    if rule.startswith('*.'):
        rule = rule[2:]
    elif rule.startswith('.'):
        rule = rule[1:]
    if is_valid_ip(rule) or is_valid_domain(rule):
        return normalize_domain(rule)
    return None


def normalize_bypass_rules(rules) -> Tuple[List[str], List[str]]:
    """Split a list or newline/comma separated string into (valid, invalid) rules"""
    if isinstance(rules, str):
        rules = re.split(r'\r?\n|,', rules)
    normalized, invalid = [], []
    for raw in rules or []:
        if not isinstance(raw, str) or not raw.strip():
            continue
        rule = normalize_bypass_rule(raw)
        if rule is None:
            invalid.append(raw.strip())
        elif rule not in normalized:
            normalized.append(rule)
    return normalized, invalid


def validate_proxy_config(config: ForwardingProxyConfig) -> ForwardingProxyConfig:
    """Validate and normalise a forwarding proxy config in place"""
    bypass, invalid = normalize_bypass_rules(config.bypass_list)
    if invalid:
        raise ValidationError(f"Invalid bypass rule: {invalid[0]}")
    config.bypass_list = bypass
    config.host = config.host.strip()

    if not config.enabled:
        return config

    if not config.host:
        raise ValidationError("Proxy host must not be empty")
    if not (is_valid_ip(config.host) or is_valid_domain(config.host)):
        raise ValidationError(f"Invalid proxy host: {config.host!r}")
    if not is_valid_port(config.port):
        raise ValidationError("Proxy port must be a number between 1 and 65535")
    config.port = int(config.port)

    if config.auth.enabled:
        if not config.auth.username.strip():
            raise ValidationError("Proxy username must not be empty")
        if not config.auth.password:
            raise ValidationError("Proxy password must not be empty")

    return config


def parse_hosts_line(line: str) -> Optional[Tuple[str, List[str]]]:
    """
    Parse one hosts-file line into (ip, [domains]).

    Returns None for blank lines and comments; raises ValidationError for
    lines that are not in ``ip domain [alias ...]`` form.
    """
    line = line.split('#', 1)[0].strip()
    if not line:
        return None
    parts = line.split()
    if len(parts) < 2:
        raise ValidationError("Expected 'ip domain'")
    ip = parts[0]
    if not is_valid_ip(ip):
        raise ValidationError(f"Invalid IPv4 address: {ip!r}")
    domains = []
    for domain in parts[1:]:
        if not is_valid_domain(domain):
            raise ValidationError(f"Invalid domain: {domain!r}")
        domains.append(normalize_domain(domain))
    return ip, domains

