"""
Routing policy compilation

Turns an effective mapping and the forwarding proxy settings into a PAC
program. The program only ever answers ``DIRECT``, ``PROXY <ip>:<port>`` or
``SOCKS <host>:<port>``; the same decision procedure is available in-process
through ``CompiledPolicy.find_proxy_for_url`` so callers can evaluate a
policy without a JavaScript runtime.
"""

import hashlib
import json
from dataclasses import dataclass
from string import Template
from typing import Dict, Optional, Tuple

from exceptions import ValidationError
from models import ForwardingProxyConfig
from validation import is_valid_domain, is_valid_ip, is_valid_port, normalize_bypass_rule


DIRECT = "DIRECT"
DEFAULT_PORT = "80"
LOCAL_HOSTS = ("localhost", "127.0.0.1")

PAC_TEMPLATE = Template("""\
// Generated by hosts-router: $count override(s)
function FindProxyForURL(url, host) {
  var mappings = $mappings;
  var bypass = $bypass;
  var fallback = $fallback;

  var domain = host;
  var port = "80";
  var colon = host.indexOf(":");
  if (colon !== -1) {
    domain = host.substring(0, colon);
    port = host.substring(colon + 1) || "80";
  }
  domain = domain.toLowerCase();

  if (isPlainHostName(domain) || domain === "localhost" || domain === "127.0.0.1") {
    return "DIRECT";
  }

  for (var i = 0; i < mappings.length; i++) {
    if (matchesDomain(domain, mappings[i][0])) {
      return "PROXY " + mappings[i][1] + ":" + port;
    }
  }

  if (fallback) {
    for (var j = 0; j < bypass.length; j++) {
      if (matchesDomain(domain, bypass[j])) {
        return "DIRECT";
      }
    }
    return fallback;
  }

  return "DIRECT";
}

function matchesDomain(domain, key) {
  if (domain === key) {
    return true;
  }
  var suffix = "." + key;
  return domain.length > suffix.length &&
    domain.substring(domain.length - suffix.length) === suffix;
}
""")


def matches_domain(domain: str, key: str) -> bool:
    """Exact match or suffix match on a label boundary"""
    if domain == key:
        return True
    suffix = "." + key
    return len(domain) > len(suffix) and domain.endswith(suffix)


def split_host(host: str) -> Tuple[str, str]:
    """Split ``domain[:port]`` at the first colon; the port defaults to 80"""
    domain, sep, port = host.partition(":")
    if not sep or not port:
        port = DEFAULT_PORT
    return domain.lower(), port


@dataclass(frozen=True)
class CompiledPolicy:
    """An executable routing policy and the inert data embedded in it"""
    script: str
    mappings: Tuple[Tuple[str, str], ...]
    bypass: Tuple[str, ...] = ()
    fallback: Optional[str] = None

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.script.encode("utf-8")).hexdigest()

    @property
    def is_noop(self) -> bool:
        return not self.mappings and not self.fallback

    def find_proxy_for_url(self, url: str, host: str) -> str:
        domain, port = split_host(host)

        if "." not in domain or domain in LOCAL_HOSTS:
            return DIRECT

        for key, ip in self.mappings:
            if matches_domain(domain, key):
                return f"PROXY {ip}:{port}"

        if self.fallback:
            if any(matches_domain(domain, rule) for rule in self.bypass):
                return DIRECT
            return self.fallback

        return DIRECT


def build_fallback_directive(proxy: Optional[ForwardingProxyConfig]) -> Optional[str]:
    """Directive for traffic no override matches, or None when no proxy is configured"""
    if proxy is None or not proxy.is_configured:
        return None
    if not (is_valid_ip(proxy.host) or is_valid_domain(proxy.host)):
        raise ValidationError(f"Invalid proxy host: {proxy.host!r}")
    if not is_valid_port(proxy.port):
        raise ValidationError(f"Invalid proxy port: {proxy.port!r}")

    keyword = "SOCKS" if proxy.protocol.is_socks else "PROXY"
    return f"{keyword} {proxy.host.lower()}:{int(proxy.port)}"


def compile_policy(mapping: Dict[str, str], proxy: Optional[ForwardingProxyConfig] = None) -> CompiledPolicy:
    """
    Compile an effective mapping into a PAC policy.

    Every key and value is re-checked before it is embedded so nothing but
    validated domains and IPv4 literals can reach the generated script.
    """
    pairs = []
    for domain, ip in mapping.items():
        if domain != domain.lower() or not is_valid_domain(domain):
            raise ValidationError(f"Refusing to compile invalid domain {domain!r}")
        if not is_valid_ip(ip):
            raise ValidationError(f"Refusing to compile invalid ip {ip!r} for {domain}")
        pairs.append((domain, ip))

    fallback = build_fallback_directive(proxy)

    bypass = []
    if fallback:
        for raw in proxy.bypass_list:
            rule = normalize_bypass_rule(raw)
            if rule is None:
                raise ValidationError(f"Refusing to compile invalid bypass rule {raw!r}")
            bypass.append(rule)

    script = PAC_TEMPLATE.substitute(
        count=len(pairs),
        mappings=json.dumps([list(p) for p in pairs]),
        bypass=json.dumps(bypass),
        fallback=json.dumps(fallback or "")
    )

    return CompiledPolicy(
        script=script,
        mappings=tuple(pairs),
        bypass=tuple(bypass),
        fallback=fallback
    )
