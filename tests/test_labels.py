"""Unit tests for container label parsing."""

import pytest

from trafego_dns.config import Settings
from trafego_dns.labels import build_entry, entries_from_labels, hostnames_from_labels, should_manage

SETTINGS = Settings(dns_provider="cloudflare", cloudflare_zone="example.com", public_ip="203.0.113.10")


class TestShouldManage:
    """Tests for manage/skip labels and DNS_DEFAULT_MANAGE."""

    @pytest.mark.parametrize(
        "labels,default_manage,expected",
        [
            ({}, True, True),
            ({}, False, False),
            ({"dns.manage": "true"}, False, True),
            ({"dns.manage": "false"}, True, False),
            ({"dns.skip": "true", "dns.manage": "true"}, True, False),
            ({"dns.cloudflare.manage": "false", "dns.manage": "true"}, True, False),
        ],
    )
    def test_manage_resolution(self, labels, default_manage: bool, expected: bool) -> None:
        """Test skip wins, then manage (provider-specific first), then the default."""
        settings = Settings(dns_provider="cloudflare", default_manage=default_manage)

        assert should_manage(labels, settings) is expected


class TestHostnames:
    """Tests for collecting hostnames from labels."""

    def test_hostname_list_domain_and_host_labels(self) -> None:
        """Test every hostname source is collected once, in order."""
        labels = {
            "dns.hostname": "a.example.com, B.example.com",
            "dns.domain": "example.com",
            "dns.subdomain": "c,a",
            "dns.use_apex": "true",
            "dns.host.1": "d.example.com",
        }

        assert hostnames_from_labels(labels, SETTINGS) == [
            "a.example.com",
            "b.example.com",
            "c.example.com",
            "example.com",
            "d.example.com",
        ]

    def test_custom_prefix(self) -> None:
        """Test DNS_LABEL_PREFIX changes which labels are read."""
        settings = Settings(label_prefix="tdns.")

        assert hostnames_from_labels({"tdns.hostname": "x.example.com", "dns.hostname": "y.example.com"}, settings) == [
            "x.example.com"
        ]


class TestBuildEntry:
    """Tests for turning one hostname and labels into a desired entry."""

    def test_defaults(self) -> None:
        """Test no labels gives the default type with ttl/proxied left to the reconciler."""
        entry = build_entry("app.example.com", {}, SETTINGS)

        assert (entry.type, entry.content, entry.ttl, entry.proxied) == ("CNAME", "", None, None)

    def test_provider_specific_labels_win(self) -> None:
        """Test dns.<provider>.* overrides the generic label."""
        labels = {"dns.type": "A", "dns.content": "1.1.1.1", "dns.cloudflare.content": "2.2.2.2", "dns.ttl": "300"}

        entry = build_entry("app.example.com", labels, SETTINGS, container_id="c1")

        assert (entry.type, entry.content, entry.ttl) == ("A", "2.2.2.2", 300)
        assert entry.source_container_id == "c1"

    @pytest.mark.parametrize("content,expected_type", [("10.0.0.1", "A"), ("fd00::1", "AAAA"), ("target.example.com", "CNAME")])
    def test_default_cname_follows_ip_content(self, content: str, expected_type: str) -> None:
        """Test IP content turns the default CNAME into A or AAAA."""
        entry = build_entry("app.example.com", {"dns.content": content}, SETTINGS)

        assert entry.type == expected_type

    def test_explicit_type_kept(self) -> None:
        """Test an explicit type label is not rewritten from the content."""
        entry = build_entry("txt.example.com", {"dns.type": "TXT", "dns.content": "10.0.0.1"}, SETTINGS)

        assert entry.type == "TXT"

    def test_apex_uses_public_ip(self) -> None:
        """Test the zone apex becomes an A record with PUBLIC_IP."""
        entry = build_entry("example.com", {}, SETTINGS)

        assert (entry.type, entry.content) == ("A", "203.0.113.10")

    def test_apex_without_public_ip_skipped(self) -> None:
        """Test the apex is skipped when PUBLIC_IP is missing."""
        settings = Settings(dns_provider="cloudflare", cloudflare_zone="example.com")

        assert build_entry("example.com", {}, settings) is None

    @pytest.mark.parametrize("value,expected", [("false", False), ("true", True), ("FALSE", False), ("yes", True)])
    def test_proxied_label(self, value: str, expected: bool) -> None:
        """Test proxied is false only for the literal 'false'."""
        entry = build_entry("app.example.com", {"dns.proxied": value}, SETTINGS)

        assert entry.proxied is expected

    def test_invalid_ttl_ignored(self) -> None:
        """Test a non-numeric ttl label falls back to the default."""
        entry = build_entry("app.example.com", {"dns.ttl": "soon"}, SETTINGS)

        assert entry.ttl is None

    def test_srv_labels(self) -> None:
        """Test priority, weight and port labels are read, provider-specific first."""
        labels = {
            "dns.type": "SRV",
            "dns.content": "sip.example.com",
            "dns.priority": "5",
            "dns.cloudflare.priority": "10",
            "dns.weight": "20",
            "dns.port": "5060",
        }

        entry = build_entry("_sip._tcp.example.com", labels, SETTINGS)

        assert (entry.type, entry.priority, entry.weight, entry.port) == ("SRV", 10, 20, 5060)

    def test_invalid_priority_ignored(self) -> None:
        """Test a non-numeric priority label is left for the MX default."""
        entry = build_entry("example.com", {"dns.type": "MX", "dns.content": "mail.example.com", "dns.priority": "high"}, SETTINGS)

        assert entry.priority is None


class TestEntriesFromLabels:
    """Tests for whole-container entry collection."""

    def test_opted_out_container_has_no_entries(self) -> None:
        """Test dns.skip removes every hostname of the container."""
        labels = {"dns.hostname": "a.example.com", "dns.skip": "true"}

        assert entries_from_labels(labels, SETTINGS, "c1") == []

    def test_each_hostname_shares_labels(self) -> None:
        """Test every hostname of a container gets the same type and content."""
        labels = {"dns.hostname": "a.example.com,b.example.com", "dns.content": "10.0.0.1"}

        entries = entries_from_labels(labels, SETTINGS, "c1")

        assert [(e.hostname, e.type, e.content) for e in entries] == [
            ("a.example.com", "A", "10.0.0.1"),
            ("b.example.com", "A", "10.0.0.1"),
        ]
