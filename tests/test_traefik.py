"""Unit tests for TraefikReader."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from trafego_dns.traefik import TraefikInstance, TraefikReader, find_config_files, router_base_name


def mock_routers_response(routers) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = routers
    return response


class TestInstanceLoading:
    """Tests for loading Traefik instances from YAML, JSON and the single URL."""

    def test_instances_from_yaml(self, tmp_path: Path) -> None:
        """Test loading instances from a YAML config file."""
        config_file = tmp_path / "traefik-instances.yaml"
        config_file.write_text(
            """
instances:
  - name: core
    url: http://traefik:8080
    target_ip: 10.0.0.2
    router_filter: "*-public"
  - name: edge
    url: https://traefik2:8080
    verify_tls: false
    middleware_filter: lan-only
  - name: missing_url
  - not_a_dict
"""
        )

        instances = TraefikReader(config_path=str(config_file)).get_instances()

        assert [i.name for i in instances] == ["core", "edge"]
        assert instances[0].target_ip == "10.0.0.2"
        assert instances[0].router_filter == "*-public"
        assert instances[1].target_ip == ""
        assert instances[1].verify_tls is False
        assert instances[1].middleware_filter == "lan-only"

    def test_instances_from_yaml_directory(self, tmp_path: Path) -> None:
        """Test every *.yaml in a directory is read and templates are skipped."""
        (tmp_path / "a.yaml").write_text("instances:\n  - name: a\n    url: http://a:8080\n")
        (tmp_path / "b.yaml").write_text("instances:\n  - name: b\n    url: http://b:8080\n")
        (tmp_path / "c.yaml.template").write_text("instances:\n  - name: c\n    url: http://c:8080\n")

        instances = TraefikReader(config_path=str(tmp_path)).get_instances()

        assert [i.name for i in instances] == ["a", "b"]
        assert len(find_config_files(str(tmp_path))) == 2

    def test_instances_from_json(self) -> None:
        """Test TRAEFIK_INSTANCES is used when no config file exists."""
        json_config = json.dumps(
            [
                {"name": "core", "url": "http://traefik:8080", "target_ip": "10.0.0.2"},
                {"name": "edge", "url": "https://traefik2:8080", "internal_ip": "10.0.0.3", "verify_tls": False},
            ]
        )

        instances = TraefikReader(config_path="/nonexistent/path.yaml", instances_json=json_config).get_instances()

        assert [i.name for i in instances] == ["core", "edge"]
        assert instances[1].target_ip == "10.0.0.3"
        assert instances[1].verify_tls is False

    def test_invalid_json_yields_no_instances(self) -> None:
        """Test malformed TRAEFIK_INSTANCES is reported as no instances."""
        reader = TraefikReader(config_path="/nonexistent/path.yaml", instances_json="[{broken")

        assert reader.get_instances() == []

    def test_single_url_fallback(self) -> None:
        """Test the single-instance fallback carries URL, target IP and credentials."""
        reader = TraefikReader(
            config_path="/nonexistent/path.yaml",
            url="http://traefik:8080",
            target_ip="10.0.0.2",
            username="admin",
            password="secret",
        )

        instances = reader.get_instances()

        assert instances == [
            TraefikInstance(
                name="traefik", url="http://traefik:8080", target_ip="10.0.0.2", username="admin", password="secret"
            )
        ]

    def test_no_config_at_all(self) -> None:
        """Test an empty list when nothing is configured."""
        assert TraefikReader(config_path="/nonexistent/path.yaml").get_instances() == []


class TestRouteDiscovery:
    """Tests for reading routers from the Traefik API."""

    def test_routes_from_host_rules(self) -> None:
        """Test every Host() hostname becomes a route with the instance target IP."""
        reader = TraefikReader()
        instance = TraefikInstance(name="core", url="http://traefik:8080", target_ip="10.0.0.1")
        routers = [
            {"name": "app@docker", "rule": "Host(`app.example.com`) && PathPrefix(`/`)"},
            {"name": "multi@docker", "rule": "Host(`a.example.com`, `b.example.com`)"},
            {"name": "api@internal", "rule": "PathPrefix(`/api`)"},
        ]

        with patch("requests.Session.get", return_value=mock_routers_response(routers)) as mock_get:
            routes = reader.get_routes(instance)

        assert {r.hostname for r in routes} == {"app.example.com", "a.example.com", "b.example.com"}
        assert all(r.target_ip == "10.0.0.1" and r.instance == "core" for r in routes)
        assert mock_get.call_args[0][0] == "http://traefik:8080/api/http/routers"

    def test_api_suffix_not_duplicated(self) -> None:
        """Test URLs already ending in /api are used as-is."""
        instance = TraefikInstance(name="core", url="http://traefik:8080/api/")

        with patch("requests.Session.get", return_value=mock_routers_response([])) as mock_get:
            TraefikReader().get_routes(instance)

        assert mock_get.call_args[0][0] == "http://traefik:8080/api/http/routers"

    def test_connection_error_propagates(self) -> None:
        """Test API failures are raised for the caller to handle."""
        instance = TraefikInstance(name="core", url="http://traefik:8080")

        with patch("requests.Session.get", side_effect=requests.exceptions.ConnectionError("refused")):
            with pytest.raises(requests.exceptions.RequestException):
                TraefikReader().get_routes(instance)

    def test_unexpected_payload_raises(self) -> None:
        """Test a non-list response raises ValueError."""
        instance = TraefikInstance(name="core", url="http://traefik:8080")

        with patch("requests.Session.get", return_value=mock_routers_response({"error": "nope"})):
            with pytest.raises(ValueError):
                TraefikReader().get_routes(instance)

    def test_router_filter(self) -> None:
        """Test only routers matching the wildcard filter are kept."""
        instance = TraefikInstance(name="core", url="http://traefik:8080", router_filter="*-public@*")
        routers = [
            {"name": "app-public@docker", "rule": "Host(`app.example.com`)"},
            {"name": "app-private@docker", "rule": "Host(`private.example.com`)"},
        ]

        with patch("requests.Session.get", return_value=mock_routers_response(routers)):
            routes = TraefikReader().get_routes(instance)

        assert [r.hostname for r in routes] == ["app.example.com"]

    def test_middleware_filter(self) -> None:
        """Test only routers using the middleware are kept, ignoring @provider suffixes."""
        instance = TraefikInstance(name="core", url="http://traefik:8080", middleware_filter="LAN-Only")
        routers = [
            {"name": "a@docker", "rule": "Host(`a.example.com`)", "middlewares": ["lan-only@file"]},
            {"name": "b@docker", "rule": "Host(`b.example.com`)", "middlewares": ["auth@file"]},
            {"name": "c@docker", "rule": "Host(`c.example.com`)"},
        ]

        with patch("requests.Session.get", return_value=mock_routers_response(routers)):
            routes = TraefikReader().get_routes(instance)

        assert [r.hostname for r in routes] == ["a.example.com"]

    def test_basic_auth_and_tls_settings(self) -> None:
        """Test credentials and verify_tls are applied to the request."""
        instance = TraefikInstance(
            name="core", url="https://traefik:8080", username="admin", password="secret", verify_tls=False
        )

        with patch("requests.Session.get", return_value=mock_routers_response([])) as mock_get:
            TraefikReader(timeout_seconds=3).get_routes(instance)

        assert mock_get.call_args.kwargs["verify"] is False
        assert mock_get.call_args.kwargs["timeout"] == 3


class TestHostnameExtraction:
    """Tests for parsing router rules."""

    @pytest.mark.parametrize(
        "rule,expected",
        [
            ("Host(`app.example.com`)", ["app.example.com"]),
            ("Host(`B.example.com`) || Host(`a.example.com`)", ["a.example.com", "b.example.com"]),
            ('Host("quoted.example.com")', ["quoted.example.com"]),
            ("Host:v1.example.com,v1b.example.com", ["v1.example.com", "v1b.example.com"]),
            ("HostRegexp(`{sub:[a-z]+}.example.com`)", []),
            ("", []),
        ],
    )
    def test_extract_hostnames(self, rule: str, expected) -> None:
        """Test v1 and v2 Host rule formats."""
        assert TraefikReader.extract_hostnames(rule) == expected

    def test_router_base_name(self) -> None:
        """Test the @provider suffix is removed."""
        assert router_base_name("app-secure@docker") == "app-secure"
        assert router_base_name("plain") == "plain"
