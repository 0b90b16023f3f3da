"""Tests for rule and proxy validation."""

import pytest

from exceptions import ValidationError
from models import ForwardingProxyConfig, ProxyAuth
from validation import (
    is_valid_domain,
    is_valid_ip,
    is_valid_port,
    normalize_bypass_rule,
    normalize_bypass_rules,
    parse_hosts_line,
    validate_group_name,
    validate_host_rule,
    validate_proxy_config,
)


class TestHostRules:

    @pytest.mark.parametrize("ip", ["10.0.0.1", "127.0.0.1", "255.255.255.255"])
    def test_valid_ipv4(self, ip):
        assert is_valid_ip(ip)

    @pytest.mark.parametrize("ip", ["", "10.0.0", "256.1.1.1", "::1", "10.0.0.1\"", None])
    def test_invalid_ip(self, ip):
        assert not is_valid_ip(ip)

    def test_domain_rules(self):
        assert is_valid_domain("example.com")
        assert is_valid_domain("Sub.Example.COM")
        assert is_valid_domain("intranet")
        assert not is_valid_domain("")
        assert not is_valid_domain("-bad.com")
        assert not is_valid_domain("bad..com")
        assert not is_valid_domain('evil.com";alert(1)//')

    def test_validate_host_rule_normalizes_domain(self):
        assert validate_host_rule(" 10.0.0.1 ", "WWW.Example.com.") == ("10.0.0.1", "www.example.com")

    def test_validate_host_rule_rejects_bad_ip(self):
        with pytest.raises(ValidationError):
            validate_host_rule("10.0.0.300", "example.com")

    def test_group_name(self):
        assert validate_group_name("  Staging ") == "Staging"
        with pytest.raises(ValidationError):
            validate_group_name("   ")
        with pytest.raises(ValidationError):
            validate_group_name("x" * 65)


class TestProxyValidation:

    @pytest.mark.parametrize("port,expected", [(1, True), (65535, True), ("8080", True),
                                               (0, False), (70000, False), ("abc", False), (True, False)])
    def test_ports(self, port, expected):
        assert is_valid_port(port) is expected

    def test_bypass_rule_forms(self):
        assert normalize_bypass_rule("*.Corp.example") == "corp.example"
        assert normalize_bypass_rule(".corp.example") == "corp.example"
        assert normalize_bypass_rule("10.1.2.3") == "10.1.2.3"
        assert normalize_bypass_rule("not a domain") is None

    def test_bypass_rules_from_text(self):
        valid, invalid = normalize_bypass_rules("a.com, *.b.com\nbad rule\na.com")
        assert valid == ["a.com", "b.com"]
        assert invalid == ["bad rule"]

    def test_disabled_proxy_skips_host_checks(self):
        config = validate_proxy_config(ForwardingProxyConfig(host="", port=None, enabled=False))
        assert config.enabled is False

    def test_enabled_proxy_requires_port(self):
        with pytest.raises(ValidationError):
            validate_proxy_config(ForwardingProxyConfig(host="proxy.local", port=None, enabled=True))

    def test_auth_requires_credentials(self):
        config = ForwardingProxyConfig(host="proxy.local", port=1080, enabled=True,
                                       auth=ProxyAuth(enabled=True, username="bob", password=""))
        with pytest.raises(ValidationError):
            validate_proxy_config(config)

    def test_port_string_converted(self):
        config = validate_proxy_config(ForwardingProxyConfig(host="proxy.local", port="3128", enabled=True))
        assert config.port == 3128


class TestHostsLine:

    def test_blank_and_comment(self):
        assert parse_hosts_line("") is None
        assert parse_hosts_line("   # just a comment") is None

    def test_aliases_and_inline_comment(self):
        assert parse_hosts_line("10.0.0.1  a.example.com B.example.com  # dev") == (
            "10.0.0.1", ["a.example.com", "b.example.com"]
        )

    def test_missing_domain(self):
        with pytest.raises(ValidationError):
            parse_hosts_line("10.0.0.1")
