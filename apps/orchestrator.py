# vuln-pkg v0.3 - Network, proxy and per-app container lifecycle
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from config import (
    CONTAINER_PREFIX, LABEL_KEY, NETWORK_NAME, PROXY_CONTAINER, PROXY_IMAGE, PROXY_LABEL_VALUE,
)
from utils.errors import AppNotInstalled, InvalidOperation, VulnPkgError
from utils.state_store import AppState, AppStatus, ImageSource

_log = logging.getLogger(__name__)

DOCKER_SOCKET = '/var/run/docker.sock'


@dataclass(frozen=True)
class DomainConfig:
    domain: str
    https: bool = False

    @classmethod
    def from_settings(cls, settings):
        return cls(domain=settings.effective_domain, https=settings.https)


@dataclass(frozen=True)
class Route:
    router: str
    hostname: str
    port: int


@dataclass
class AppStatusRow:
    '''One line of `status`: persisted state merged with what the daemon reports'''
    name: str
    status: str
    container_id: Optional[str] = None
    image_ref: Optional[str] = None
    image_source: Optional[str] = None
    hostnames: List[str] = field(default_factory=list)
    assigned_ports: list = field(default_factory=list)
    tracked: bool = True

    def to_dict(self):
        return {
            'name': self.name,
            'status': self.status,
            'container_id': self.container_id,
            'image_ref': self.image_ref,
            'image_source': self.image_source,
            'hostnames': list(self.hostnames),
            'assigned_ports': [list(pair) for pair in self.assigned_ports],
            'tracked': self.tracked,
        }


def container_name(app_name):
    return f"{CONTAINER_PREFIX}{app_name}"


def compute_routes(app, domain):
    '''First HTTP port routes to <name>.<domain>, every other one to <name>-<port>.<domain>'''
    routes = []
    for index, port in enumerate(app.http_ports):
        router = app.name if index == 0 else f"{app.name}-{port.port}"
        routes.append(Route(router=router, hostname=f"{router}.{domain}", port=port.port))
    return routes


def routing_labels(app, routes, https=False):
    '''Traefik labels for every routed port of app'''
    labels = {LABEL_KEY: app.name}
    if not routes:
        return labels
    labels['traefik.enable'] = 'true'
    labels['traefik.docker.network'] = NETWORK_NAME
    for route in routes:
        prefix = f"traefik.http.routers.{route.router}"
        labels[f"{prefix}.rule"] = f"Host(`{route.hostname}`)"
        labels[f"{prefix}.entrypoints"] = 'web'
        labels[f"{prefix}.service"] = route.router
        labels[f"traefik.http.services.{route.router}.loadbalancer.server.port"] = str(route.port)
        if https:
            secure = f"traefik.http.routers.{route.router}-secure"
            labels[f"{secure}.rule"] = f"Host(`{route.hostname}`)"
            labels[f"{secure}.entrypoints"] = 'websecure'
            labels[f"{secure}.tls"] = 'true'
            labels[f"{secure}.service"] = route.router
    return labels


def proxy_command(https=False):
    command = [
        '--api.dashboard=true',
        '--api.insecure=true',
        '--providers.docker=true',
        '--providers.docker.exposedbydefault=false',
        f"--providers.docker.network={NETWORK_NAME}",
        '--entrypoints.web.address=:80',
    ]
    if https:
        command.append('--entrypoints.websecure.address=:443')
    return command


def proxy_labels(domain):
    return {
        LABEL_KEY: PROXY_LABEL_VALUE,
        'traefik.enable': 'true',
        'traefik.http.routers.traefik-dashboard.rule': f"Host(`traefik.{domain}`)",
        'traefik.http.routers.traefik-dashboard.service': 'api@internal',
    }


def _is_running(info):
    return bool(info and (info.get('State') or {}).get('Running'))


def _publishes(info, port):
    bindings = (info.get('HostConfig') or {}).get('PortBindings') or {}
    return f"{port}/tcp" in bindings


class OrchestrationEngine:
    '''
    Drives the daemon for one command: network, proxy and app containers.
    Every mutating call loads the latest state, applies one change and saves.
    '''

    def __init__(self, docker, builder, store):
        self.docker = docker
        self.builder = builder
        self.store = store

    # ==================== Shared infrastructure ====================

    def ensure_network(self, state=None):
        network_id = self.docker.network_id(NETWORK_NAME)
        if network_id is None:
            _log.info("Creating network %s", NETWORK_NAME)
            network_id = self.docker.create_network(NETWORK_NAME, labels={LABEL_KEY: 'network'})
        if state is not None:
            state.network_id = network_id
        return network_id

    def ensure_proxy(self, domain_config, state=None):
        info = self.docker.inspect_container(PROXY_CONTAINER)
        if _is_running(info):
            proxy_id = info['Id']
            if domain_config.https and not _publishes(info, 443):
                _log.warning(
                    "Reverse proxy %s was started without HTTPS; remove every app to recreate it with port 443",
                    PROXY_CONTAINER,
                )
        else:
            if info is not None:
                # A stopped proxy may carry outdated entrypoints; start from scratch
                self.docker.remove_container(PROXY_CONTAINER)
            if not self.docker.image_exists(PROXY_IMAGE):
                self.docker.pull_image(PROXY_IMAGE)
            publish = ['80:80']
            if domain_config.https:
                publish.append('443:443')
            _log.info("Starting reverse proxy %s", PROXY_CONTAINER)
            proxy_id = self.docker.create_container(
                PROXY_CONTAINER,
                PROXY_IMAGE,
                network=NETWORK_NAME,
                labels=proxy_labels(domain_config.domain),
                publish=publish,
                volumes=[f"{DOCKER_SOCKET}:{DOCKER_SOCKET}:ro"],
                command=proxy_command(domain_config.https),
            )
            self._start_or_discard(proxy_id)
        if state is not None:
            state.proxy_container_id = proxy_id
        return proxy_id

    # ==================== Helpers ====================

    def _require_daemon(self):
        self.docker.ping()

    def _start_or_discard(self, container_id):
        try:
            self.docker.start_container(container_id)
        except BaseException:
            try:
                self.docker.remove_container(container_id)
            except VulnPkgError as cleanup_error:
                _log.warning("Could not remove container %s after failed start: %s", container_id[:12], cleanup_error)
            raise

    def _find_container(self, name, entry):
        info = None
        if entry is not None and entry.container_id:
            info = self.docker.inspect_container(entry.container_id)
        if info is None:
            info = self.docker.inspect_container(container_name(name))
        return info

    def _ensure_image(self, app, entry):
        '''Build or pull app's image unless the recorded one is already present'''
        expected = app.effective_image()
        if entry is not None and entry.image_ref == expected and self.docker.image_exists(expected):
            _log.info("Image %s already present", expected)
            return None
        result = self.builder.resolve(app)
        if result.image_source is ImageSource.PREBUILT and not self.docker.image_exists(result.image_ref):
            self.docker.pull_image(result.image_ref)
        return result

    @staticmethod
    def _record_build(state, app, result):
        entry = state.apps.get(app.name)
        if entry is None:
            entry = AppState(
                name=app.name,
                status=AppStatus.INSTALLED,
                image_ref=result.image_ref,
                image_source=result.image_source,
            )
            state.apps[app.name] = entry
        entry.image_ref = result.image_ref
        entry.image_source = result.image_source
        entry.build_timestamp = result.build_timestamp
        entry.git_commit_sha = result.git_commit_sha
        return entry

    # ==================== Lifecycle ====================

    def install(self, app):
        self._require_daemon()
        state = self.store.load()
        result = self._ensure_image(app, state.apps.get(app.name))
        if result is None:
            return state.apps[app.name]
        entry = self._record_build(state, app, result)
        self.store.save(state)
        return entry

    def run(self, app, domain_config):
        self._require_daemon()
        state = self.store.load()
        entry = state.apps.get(app.name)
        info = self._find_container(app.name, entry)

        if entry is not None and _is_running(info):
            _log.info("%s is already running", app.name)
            if entry.status is not AppStatus.RUNNING or entry.container_id != info['Id']:
                entry.status = AppStatus.RUNNING
                entry.container_id = info['Id']
                self.store.save(state)
            return entry

        result = self._ensure_image(app, entry)
        if result is not None:
            entry = self._record_build(state, app, result)
        self.ensure_network(state)
        self.ensure_proxy(domain_config, state)

        routes = compute_routes(app, domain_config.domain)
        image_id = self.docker.image_id(entry.image_ref)

        if info is not None and not _is_running(info) and info.get('Image') != image_id:
            _log.info("Image of %s changed since its container was created; recreating", app.name)
            self.docker.remove_container(info['Id'])
            info = None

        if info is None:
            container_id = self.docker.create_container(
                container_name(app.name),
                entry.image_ref,
                network=NETWORK_NAME,
                labels=routing_labels(app, routes, domain_config.https),
                env=list(app.env),
                publish=[f"{p.port}:{p.port}/{p.protocol}" for p in app.direct_ports],
            )
            self._start_or_discard(container_id)
        else:
            container_id = info['Id']
            if not _is_running(info):
                self.docker.start_container(container_id)

        entry.status = AppStatus.RUNNING
        entry.container_id = container_id
        entry.hostnames = [route.hostname for route in routes]
        entry.assigned_ports = [(p.port, p.port) for p in app.direct_ports]
        self.store.save(state)
        return entry

    def stop(self, name):
        self._require_daemon()
        state = self.store.load()
        entry = state.apps.get(name)
        if entry is None:
            raise AppNotInstalled(name)

        info = self.docker.inspect_container(entry.container_id) if entry.container_id else None
        if info is None:
            if entry.status is AppStatus.INSTALLED:
                raise InvalidOperation(f"Application '{name}' is not running")
            if entry.status is AppStatus.RUNNING or entry.container_id:
                _log.warning("Container of %s no longer exists", name)
                entry.container_id = None
                entry.status = AppStatus.STOPPED
                self.store.save(state)
            return entry

        if _is_running(info):
            self.docker.stop_container(info['Id'])
        if entry.status is not AppStatus.STOPPED:
            entry.status = AppStatus.STOPPED
            self.store.save(state)
        return entry

    def remove(self, name, purge=False):
        self._require_daemon()
        state = self.store.load()
        entry = state.apps.get(name)
        info = self._find_container(name, entry)
        if entry is None and info is None:
            raise AppNotInstalled(name)

        if info is not None:
            if _is_running(info):
                self.docker.stop_container(info['Id'])
            self.docker.remove_container(info['Id'])

        if purge:
            image_ref = entry.image_ref if entry is not None else (info.get('Config') or {}).get('Image')
            if image_ref and self.docker.remove_image(image_ref):
                _log.info("Removed image %s", image_ref)
            if entry is None or entry.image_source is not ImageSource.PREBUILT:
                self.builder.remove_workspace(name)

        state.apps.pop(name, None)

        remaining = [c for c in self.docker.list_containers(LABEL_KEY)
                     if c['labels'].get(LABEL_KEY) != PROXY_LABEL_VALUE]
        if not remaining and self.docker.inspect_container(PROXY_CONTAINER) is not None:
            _log.info("No applications left, stopping the reverse proxy")
            self.docker.remove_container(PROXY_CONTAINER)
            state.proxy_container_id = None

        self.store.save(state)

    def rebuild(self, app):
        if not app.is_custom:
            raise InvalidOperation(f"Application '{app.name}' is a prebuilt package and cannot be rebuilt")
        self._require_daemon()
        result = self.builder.rebuild(app)

        entry = self.store.update(lambda state: self._record_build(state, app, result))
        if entry.status is AppStatus.RUNNING:
            _log.warning("%s is still running the previous image; stop and run it to switch", app.name)
        return entry

    def status(self):
        """Persisted state reconciled with the daemon.

        Entries whose container disappeared are healed to stopped and saved.
        Labelled containers missing from the state are reported as untracked.
        """
        self._require_daemon()
        state = self.store.load()
        live = self.docker.list_containers(LABEL_KEY)
        by_id = {c['id']: c for c in live}
        by_name = {c['name']: c for c in live}
        changed = False
        rows = []

        for name, entry in sorted(state.apps.items()):
            container = by_id.get(entry.container_id) if entry.container_id else None
            if container is None:
                container = by_name.get(container_name(name))

            if container is None:
                if entry.container_id or entry.status is AppStatus.RUNNING:
                    _log.warning("Container of %s disappeared; marking it stopped", name)
                    entry.container_id = None
                    entry.status = AppStatus.STOPPED
                    changed = True
            else:
                actual = AppStatus.RUNNING if container['state'] == 'running' else AppStatus.STOPPED
                if entry.status is not actual or entry.container_id != container['id']:
                    entry.status = actual
                    entry.container_id = container['id']
                    changed = True

            rows.append(AppStatusRow(
                name=name,
                status=entry.status.value,
                container_id=entry.container_id,
                image_ref=entry.image_ref,
                image_source=entry.image_source.value,
                hostnames=list(entry.hostnames),
                assigned_ports=list(entry.assigned_ports),
            ))

        for container in live:
            app_name = container['labels'].get(LABEL_KEY)
            if app_name == PROXY_LABEL_VALUE or app_name in state.apps:
                continue
            rows.append(AppStatusRow(
                name=app_name or container['name'],
                status='running' if container['state'] == 'running' else 'stopped',
                container_id=container['id'],
                image_ref=container['image'],
                tracked=False,
            ))

        if state.proxy_container_id and state.proxy_container_id not in by_id:
            state.proxy_container_id = None
            changed = True

        if changed:
            self.store.save(state)
        return rows
