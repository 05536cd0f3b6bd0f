"""Traefik instances and HTTP routers.

Instances come from (first match wins):
  1. YAML file(s) at TRAEFIK_CONFIG_PATH (file, or directory of *.yaml)
  2. TRAEFIK_INSTANCES JSON list
  3. the single TRAEFIK_URL (+ optional TRAEFIK_TARGET_IP)
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import yaml
from requests.auth import HTTPBasicAuth

from trafego_dns.config import _parse_bool
from trafego_dns.models import normalize_hostname

logger = logging.getLogger(__name__)


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Files ending in `.template` are skipped.
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


@dataclass(frozen=True)
class TraefikInstance:
    """One Traefik API endpoint to read routers from."""

    name: str
    url: str
    target_ip: str = ""
    verify_tls: bool = True
    username: str = ""
    password: str = ""
    router_filter: str = ""
    middleware_filter: str = ""


@dataclass(frozen=True)
class TraefikRoute:
    hostname: str
    router_name: str
    instance: str
    target_ip: str = ""


def _instance_from_dict(item: Any) -> Optional[TraefikInstance]:
    if not isinstance(item, dict):
        return None
    url = str(item.get("url") or "").strip()
    if not url:
        return None
    return TraefikInstance(
        name=str(item.get("name") or "traefik").strip(),
        url=url,
        target_ip=str(item.get("target_ip") or item.get("internal_ip") or "").strip(),
        verify_tls=_parse_bool(item.get("verify_tls"), default=True),
        username=str(item.get("username") or "").strip(),
        password=str(item.get("password") or "").strip(),
        router_filter=str(item.get("router_filter") or "").strip(),
        middleware_filter=str(item.get("middleware_filter") or "").strip(),
    )


class TraefikReader:
    """Loads Traefik instances and lists the hostnames their routers serve."""

    # v2/v3: Host(`a.example.com`) or Host(`a`, `b`); quotes or backticks.
    HOST_RULE_RE = re.compile(r"\bHost\(([^)]*)\)")
    HOST_ARG_RE = re.compile(r"[`\"']([^`\"']+)[`\"']")
    # v1: Host:a.example.com,b.example.com
    HOST_V1_RE = re.compile(r"\bHost:\s*([^;\s]+)")

    def __init__(
        self,
        config_path: str = "",
        instances_json: str = "",
        url: str = "",
        target_ip: str = "",
        username: str = "",
        password: str = "",
        timeout_seconds: float = 10.0,
    ):
        self._config_path = config_path
        self._instances_json = instances_json
        self._url = url
        self._target_ip = target_ip
        self._username = username
        self._password = password
        self._timeout = timeout_seconds

    def get_instances(self) -> List[TraefikInstance]:
        if self._config_path:
            config_files = find_config_files(self._config_path)
            if config_files:
                all_instances: List[TraefikInstance] = []
                for config_file in config_files:
                    try:
                        with open(config_file, "r") as f:
                            config_data = yaml.safe_load(f)
                    except (OSError, yaml.YAMLError) as e:
                        logger.error(f"Failed to load config from {config_file}: {e}")
                        continue

                    if not config_data or "instances" not in config_data:
                        logger.warning(f"Config file {config_file} missing 'instances' key")
                        continue
                    for item in config_data["instances"] or []:
                        instance = _instance_from_dict(item)
                        if instance is not None:
                            all_instances.append(instance)

                if all_instances:
                    logger.debug(
                        f"Loaded {len(all_instances)} Traefik instance(s) from {len(config_files)} config file(s)"
                    )
                    return all_instances

        if self._instances_json:
            try:
                raw = json.loads(self._instances_json)
            except json.JSONDecodeError as e:
                logger.error(f"Failed to parse TRAEFIK_INSTANCES JSON: {e}")
                return []
            if not isinstance(raw, list):
                logger.error("TRAEFIK_INSTANCES must be a JSON list")
                return []
            return [i for i in (_instance_from_dict(item) for item in raw) if i is not None]

        url = self._url.strip()
        if not url:
            return []
        return [
            TraefikInstance(
                name="traefik",
                url=url,
                target_ip=self._target_ip.strip(),
                username=self._username,
                password=self._password,
            )
        ]

    def get_routes(self, instance: TraefikInstance) -> List[TraefikRoute]:
        """Routes for one instance. Raises requests/JSON errors on failure."""
        session = requests.Session()
        if instance.username and instance.password:
            session.auth = HTTPBasicAuth(instance.username, instance.password)

        base = instance.url.rstrip("/")
        if not base.endswith("/api"):
            base = f"{base}/api"
        try:
            response = session.get(
                f"{base}/http/routers",
                timeout=self._timeout,
                verify=instance.verify_tls,
            )
            response.raise_for_status()
            routers = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            logger.error(f"Failed to get routes from {instance.name}: {e}")
            raise
        finally:
            session.close()

        if not isinstance(routers, list):
            raise ValueError(
                f"Unexpected response format from {instance.name}: "
                f"expected list, got {type(routers).__name__}"
            )

        routes: List[TraefikRoute] = []
        for router in routers:
            if not isinstance(router, dict):
                logger.debug(f"Skipping non-dict router entry: {router}")
                continue
            router_name = router.get("name") or ""

            if instance.router_filter and not self._matches_filter(router_name, instance.router_filter):
                logger.debug(
                    f"Router '{router_name}' filtered out by name pattern '{instance.router_filter}'"
                )
                continue

            if instance.middleware_filter and not self._has_middleware(router, instance.middleware_filter):
                logger.debug(
                    f"Router '{router_name}' filtered out by middleware '{instance.middleware_filter}'"
                )
                continue

            for hostname in self.extract_hostnames(router.get("rule") or ""):
                routes.append(
                    TraefikRoute(
                        hostname=hostname,
                        router_name=router_name,
                        instance=instance.name,
                        target_ip=instance.target_ip,
                    )
                )
        return routes

    def _matches_filter(self, router_name: str, pattern: str) -> bool:
        """Wildcard (`*`, `?`) match of the router name, e.g. "*-internal"."""
        if not pattern:
            return True
        return fnmatch.fnmatch(router_name, pattern)

    def _has_middleware(self, router: Dict[str, Any], middleware_name: str) -> bool:
        """Case-insensitive middleware match, ignoring any `@provider` suffix."""
        if not middleware_name:
            return True

        middlewares = router.get("middlewares", [])
        if not isinstance(middlewares, list):
            return False

        wanted = middleware_name.lower()
        return any(isinstance(mw, str) and mw.split("@")[0].lower() == wanted for mw in middlewares)

    @classmethod
    def extract_hostnames(cls, rule: str) -> List[str]:
        """Extract hostnames from a Traefik router rule."""
        hostnames = set()
        for match in cls.HOST_RULE_RE.finditer(rule or ""):
            for arg in cls.HOST_ARG_RE.finditer(match.group(1)):
                hostnames.add(normalize_hostname(arg.group(1)))
        for match in cls.HOST_V1_RE.finditer(rule or ""):
            for name in match.group(1).split(","):
                hostnames.add(normalize_hostname(name))
        hostnames.discard("")
        return sorted(hostnames)


def router_base_name(router_name: str) -> str:
    """`app-secure@docker` -> `app-secure`."""
    return router_name.split("@", 1)[0]
