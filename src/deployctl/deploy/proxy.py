"""Helpers for reverse-proxy (Traefik) dynamic configuration documents.

Documents are plain dicts as loaded from YAML. Only the ``http`` section is
rewritten: routers, services and the load-balancer servers in them.
"""

import copy
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

from deployctl.core.exceptions import ValidationError

STAGED_SUFFIX = "-deploy"
CONFIG_EXTENSION = ".yml"


def parse_backend_url(url: str) -> tuple[str, str, int]:
    """Split a backend server URL into scheme, host and port.

    A bare ``host:port`` is accepted and treated as http.

    Raises:
        ValidationError: if the host or a valid port is missing
    """
    if not url or not isinstance(url, str):
        raise ValidationError(f"invalid backend URL: {url!r}")

    raw = url if "://" in url else f"http://{url}"
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise ValidationError(f"invalid backend URL (expected host:port): {url}: {e}") from e

    if not parts.hostname:
        raise ValidationError(f"invalid backend URL (expected host:port): {url}")
    if port is None:
        raise ValidationError(f"backend URL has no port (expected host:port): {url}")
    if not 1 <= port <= 65535:
        raise ValidationError(f"port number out of range (1-65535): {port}")
    return parts.scheme or "http", parts.hostname, port


def config_name(stem: str, tag: str, staged: bool = False) -> str:
    """File name of a tagged copy of a template."""
    suffix = STAGED_SUFFIX if staged else ""
    return f"{stem}-{tag}{suffix}{CONFIG_EXTENSION}"


def parse_config_name(name: str, stems: list[str]) -> tuple[str, str, bool] | None:
    """Reverse of ``config_name``.

    The longest matching stem wins so ``api`` and ``api-admin`` templates can
    coexist.

    Returns:
        (stem, tag, staged), or None if name belongs to no known template
    """
    if not name.endswith(CONFIG_EXTENSION):
        return None
    base = name[: -len(CONFIG_EXTENSION)]
    staged = base.endswith(STAGED_SUFFIX)
    if staged:
        base = base[: -len(STAGED_SUFFIX)]

    for stem in sorted(stems, key=len, reverse=True):
        prefix = f"{stem}-"
        if base.startswith(prefix) and len(base) > len(prefix):
            return stem, base[len(prefix):], staged
    return None


def _http(document: dict[str, Any]) -> dict[str, Any]:
    http = document.get("http")
    return http if isinstance(http, dict) else {}


def _service_refs(service: dict[str, Any]) -> list[str]:
    """Proxy services a weighted, mirroring or failover service points at."""
    refs: list[str] = []
    weighted = service.get("weighted")
    if isinstance(weighted, dict):
        refs.extend(ref.get("name", "") for ref in weighted.get("services") or [])
    mirroring = service.get("mirroring")
    if isinstance(mirroring, dict):
        refs.append(mirroring.get("service", ""))
        refs.extend(ref.get("name", "") for ref in mirroring.get("mirrors") or [])
    failover = service.get("failover")
    if isinstance(failover, dict):
        refs.extend(failover.get(key, "") for key in ("service", "fallback"))
    return [ref for ref in refs if ref]


def _backend_hosts(service: dict[str, Any]) -> set[str]:
    hosts: set[str] = set()
    load_balancer = service.get("loadBalancer")
    if isinstance(load_balancer, dict):
        for server in load_balancer.get("servers") or []:
            try:
                _, host, _ = parse_backend_url(server.get("url", ""))
            except ValidationError:
                continue
            hosts.add(host)
    return hosts


def service_owners(document: dict[str, Any], services: Iterable[str]) -> dict[str, set[str]]:
    """Compose services behind each proxy service declared in a document.

    A proxy service belongs to the compose services its load balancer points
    at or that share its name, plus the owners of the proxy services it
    references.
    """
    known = set(services)
    declared = _http(document).get("services") or {}
    direct = {
        name: ({name} | _backend_hosts(service or {})) & known
        for name, service in declared.items()
    }

    owners: dict[str, set[str]] = {}
    for name in declared:
        found: set[str] = set()
        pending, seen = [name], set()
        while pending:
            current = pending.pop()
            if current in seen or current not in declared:
                continue
            seen.add(current)
            found |= direct[current]
            pending.extend(_service_refs(declared[current] or {}))
        owners[name] = found
    return owners


def references_services(document: dict[str, Any], services: set[str]) -> bool:
    """True if a document routes to any of the given compose services."""
    return any(service_owners(document, services).values())


def stage_document(
    template: dict[str, Any],
    tag: str,
    routes: dict[str, str | None] | None = None,
) -> dict[str, Any]:
    """Copy a template with its names and backends retargeted to a version.

    Servers ``scheme://host:port`` become ``scheme://host-<tag>:port``,
    services and their references gain ``-<tag>`` and routers are renamed
    ``<router>-<tag>-deploy`` until promotion.

    Args:
        template: Untagged template document
        tag: Version being deployed
        routes: Tag each compose service receives traffic on, None for
            services that are not running. Entries of services that are not
            running are left out and entries whose services all run another
            version keep that version. Without routes everything moves to tag.

    Raises:
        ValidationError: if a backend URL is malformed
    """
    document = copy.deepcopy(template)
    http = _http(document)
    if not http:
        return document

    declared = http.get("services") or {}
    owners = service_owners(template, routes or {})

    def entry_tag(found: set[str]) -> str | None:
        if routes is None or not found:
            return tag
        tags = {routes[name] for name in found}
        if None in tags:
            return None
        return tags.pop() if len(tags) == 1 else tag

    tags = {name: entry_tag(owners.get(name, set())) for name in declared}
    renamed = {name: f"{name}-{entry}" for name, entry in tags.items() if entry is not None}

    def ref_name(ref: str, entry: str) -> str:
        # Cross-provider references such as api@internal are left alone
        if not ref or "@" in ref:
            return ref
        return renamed.get(ref, f"{ref}-{entry}")

    services: dict[str, Any] = {}
    for name, service in declared.items():
        entry = tags[name]
        if entry is None:
            continue
        service = service or {}
        load_balancer = service.get("loadBalancer")
        if isinstance(load_balancer, dict):
            for server in load_balancer.get("servers") or []:
                scheme, host, port = parse_backend_url(server.get("url", ""))
                server["url"] = f"{scheme}://{host}-{(routes or {}).get(host) or entry}:{port}"
        weighted = service.get("weighted")
        if isinstance(weighted, dict):
            for ref in weighted.get("services") or []:
                ref["name"] = ref_name(ref.get("name", ""), entry)
        mirroring = service.get("mirroring")
        if isinstance(mirroring, dict):
            mirroring["service"] = ref_name(mirroring.get("service", ""), entry)
            for ref in mirroring.get("mirrors") or []:
                ref["name"] = ref_name(ref.get("name", ""), entry)
        failover = service.get("failover")
        if isinstance(failover, dict):
            for key in ("service", "fallback"):
                if key in failover:
                    failover[key] = ref_name(failover[key], entry)
        services[renamed[name]] = service
    if "services" in http:
        http["services"] = services

    routers: dict[str, Any] = {}
    for name, router in (http.get("routers") or {}).items():
        router = router or {}
        entry = tags.get(router.get("service", ""), tag)
        if entry is None:
            continue
        if "service" in router:
            router["service"] = ref_name(router["service"], entry)
        routers[f"{name}-{entry}{STAGED_SUFFIX}"] = router
    if "routers" in http:
        http["routers"] = routers

    return document


def promote_document(staged: dict[str, Any]) -> dict[str, Any]:
    """Final form of a staged document: routers drop the staging suffix."""
    document = copy.deepcopy(staged)
    http = _http(document)
    routers = http.get("routers")
    if isinstance(routers, dict):
        http["routers"] = {
            (name[: -len(STAGED_SUFFIX)] if name.endswith(STAGED_SUFFIX) else name): router
            for name, router in routers.items()
        }
    return document


def dump_document(document: dict[str, Any]) -> str:
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def load_templates(directory: str | Path) -> dict[str, dict[str, Any]]:
    """Read every ``*.yml``/``*.yaml`` document in a local directory, keyed by stem.

    A missing directory yields no templates.

    Raises:
        ValidationError: if a file is not a YAML mapping
    """
    path = Path(directory)
    if not path.is_dir():
        return {}

    templates: dict[str, dict[str, Any]] = {}
    for file in sorted(path.iterdir()):
        if file.suffix not in (".yml", ".yaml") or not file.is_file():
            continue
        try:
            document = yaml.safe_load(file.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid proxy template {file}: {e}") from e
        if not isinstance(document, dict):
            raise ValidationError(f"proxy template {file} must be a mapping")
        templates[file.stem] = document
    return templates
