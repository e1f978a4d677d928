"""Shared fixtures: an in-memory Docker daemon, HTTP session and git client."""

import io
import itertools
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import requests

from cli import ui
from config import Context, Settings
from utils.errors import DaemonUnavailable, DockerError

MANIFEST_URL = "https://example.test/manifest.yml"

MANIFEST_YAML = """\
meta:
  author: Lab Team
  email: lab@example.test
  url: https://example.test
  description: Training targets
apps:
  - name: dvwa
    version: latest
    image: vulnerables/web-dvwa:latest
    ports: [80]
    description: Damn Vulnerable Web Application
    tags: [php, sqli, xss]
  - name: custom-sqli-lab
    version: "1.0"
    type: dockerfile
    dockerfile: |
      FROM php:8-apache
      COPY . /var/www/html
    ports: [80]
    env: ["DB_PASSWORD=secret"]
    tags: [sqli]
  - name: webgoat
    version: "2023.8"
    image: webgoat/webgoat:latest
    ports: [8080, 9090]
    description: OWASP WebGoat
    tags: [java, owasp]
  - name: juice-shop
    version: "15.0"
    type: git
    repo: https://example.test/juice-shop.git
    ref: v15.0.0
    ports: [3000]
  - name: vsftpd
    version: "2.3.4"
    image: example/vsftpd:2.3.4
    ports:
      - 80
      - {port: 21, protocol: tcp, label: ftp}
"""


# ==================== Docker ====================

def _container_port(spec):
    port = spec.split(':')[-1]
    return port if '/' in port else f"{port}/tcp"


class FakeDocker:
    """In-memory stand-in for DockerCLI that records every call."""

    show_progress = False

    def __init__(self):
        self.calls = []
        self.down = False
        self.networks = {}
        self.images = {}
        self.containers = {}
        self.builds = []
        self.build_failure = None
        self._ids = itertools.count(1)

    def _new_id(self):
        return f"{next(self._ids):064x}"

    def _record(self, name, *args):
        self.calls.append((name,) + args)

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    def _lookup(self, name_or_id):
        if name_or_id in self.containers:
            return self.containers[name_or_id]
        for container in self.containers.values():
            if container['name'] == name_or_id:
                return container
        return None

    def add_container(self, name, image_ref, labels, running=True):
        cid = self._new_id()
        self.containers[cid] = {
            'id': cid,
            'name': name,
            'image_ref': image_ref,
            'image_id': self.images.get(image_ref, ''),
            'labels': dict(labels),
            'running': running,
        }
        return cid

    # DockerCLI interface

    def ping(self):
        self._record('ping')
        if self.down:
            raise DaemonUnavailable("Cannot reach the Docker daemon.")
        return True

    def network_id(self, name):
        self._record('network_id', name)
        return self.networks.get(name)

    def create_network(self, name, labels=None):
        self._record('create_network', name)
        self.networks[name] = self._new_id()
        return self.networks[name]

    def image_id(self, ref):
        self._record('image_id', ref)
        return self.images.get(ref)

    def image_exists(self, ref):
        return ref in self.images

    def pull_image(self, ref):
        self._record('pull_image', ref)
        self.images[ref] = f"sha256:{self._new_id()}"

    def build_image(self, tag, context_dir, dockerfile, no_cache=False):
        self._record('build_image', tag)
        context_dir = Path(context_dir)
        dockerfile = Path(dockerfile)
        self.builds.append({
            'tag': tag,
            'context': context_dir,
            'files': sorted(str(p.relative_to(context_dir)) for p in context_dir.rglob('*') if p.is_file()),
            'dockerfile': dockerfile.read_text(),
            'dockerfile_in_context': context_dir in dockerfile.parents,
            'no_cache': no_cache,
        })
        if self.build_failure is not None:
            return subprocess.CompletedProcess(['docker', 'build'], 1, self.build_failure, '')
        self.images[tag] = f"sha256:{self._new_id()}"
        return subprocess.CompletedProcess(['docker', 'build'], 0, 'Successfully built', '')

    def remove_image(self, ref):
        self._record('remove_image', ref)
        return self.images.pop(ref, None) is not None

    def inspect_container(self, name_or_id):
        self._record('inspect_container', name_or_id)
        container = self._lookup(name_or_id)
        if container is None:
            return None
        return {
            'Id': container['id'],
            'Name': '/' + container['name'],
            'Image': container['image_id'],
            'Config': {'Image': container['image_ref'], 'Labels': dict(container['labels'])},
            'State': {'Running': container['running']},
            'HostConfig': {'PortBindings': {
                _container_port(spec): [{'HostPort': spec.split(':')[0]}]
                for spec in container.get('publish', [])
            }},
        }

    def create_container(self, name, image, network=None, labels=None, env=None,
                         publish=None, volumes=None, command=None):
        self._record('create_container', name)
        if self._lookup(name) is not None:
            raise DockerError(f"create of container {name}", "name already in use")
        cid = self.add_container(name, image, labels or {}, running=False)
        self.containers[cid].update({
            'network': network,
            'env': list(env or []),
            'publish': list(publish or []),
            'volumes': list(volumes or []),
            'command': list(command or []),
        })
        return cid

    def start_container(self, name_or_id):
        self._record('start_container', name_or_id)
        self._lookup(name_or_id)['running'] = True

    def stop_container(self, name_or_id, timeout=10):
        self._record('stop_container', name_or_id)
        self._lookup(name_or_id)['running'] = False

    def remove_container(self, name_or_id):
        self._record('remove_container', name_or_id)
        container = self._lookup(name_or_id)
        if container is None:
            return False
        del self.containers[container['id']]
        return True

    def list_containers(self, label):
        self._record('list_containers', label)
        return [
            {
                'id': c['id'],
                'name': c['name'],
                'state': 'running' if c['running'] else 'exited',
                'image': c['image_ref'],
                'labels': dict(c['labels']),
            }
            for c in self.containers.values() if label in c['labels']
        ]


# ==================== HTTP ====================

class FakeResponse:
    def __init__(self, url, body, status_code=200):
        self.url = url
        self.content = body if isinstance(body, bytes) else body.encode('utf-8')
        self.status_code = status_code

    @property
    def text(self):
        return self.content.decode('utf-8')

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error for url: {self.url}", response=self)

    def iter_content(self, chunk_size=1):
        stream = io.BytesIO(self.content)
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield chunk

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Serves registered URLs; everything else fails like an unreachable host."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requested = []
        self.offline = False

    def get(self, url, timeout=None, stream=False):
        self.requested.append(url)
        if self.offline:
            raise requests.ConnectionError(f"Failed to establish a new connection to {url}")
        if url not in self.routes:
            return FakeResponse(url, b'', status_code=404)
        return FakeResponse(url, self.routes[url])


# ==================== Git ====================

class FakeGit:
    """Writes a fixed file tree into the checkout and reports a fixed SHA."""

    def __init__(self, files=None, sha='a' * 40):
        self.files = files if files is not None else {'Dockerfile': 'FROM node:18\n', 'app.js': '//\n'}
        self.sha = sha
        self.synced = []

    def sync(self, repo, dest, ref=None):
        self.synced.append((repo, Path(dest), ref))
        for relative, content in self.files.items():
            target = Path(dest) / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return self.sha


# ==================== Fixtures ====================

class FakeClock:
    """Returns a strictly increasing UTC time on every call."""

    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture(autouse=True)
def reset_json_mode():
    ui.set_json_mode(False)
    yield
    ui.set_json_mode(False)


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def fake_session():
    return FakeSession({MANIFEST_URL: MANIFEST_YAML})


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manifest_text():
    return MANIFEST_YAML


@pytest.fixture
def manifest():
    from apps.models import parse_manifest
    return parse_manifest(MANIFEST_YAML)


@pytest.fixture
def manifest_file(tmp_path):
    path = tmp_path / 'manifest.yml'
    path.write_text(MANIFEST_YAML)
    return path


@pytest.fixture
def context(tmp_path, fake_docker, manifest_file):
    settings = Settings(manifest_url=manifest_file.as_uri())
    return Context.create(settings, state_dir=tmp_path / 'home', docker=fake_docker)


@pytest.fixture
def store(context):
    from utils.state_store import StateStore
    return StateStore(context.paths.state_file)


@pytest.fixture
def builder(context, fake_session, fake_git, clock):
    from apps.package_builder import PackageBuilder
    return PackageBuilder(context.docker, context.paths.repos_dir, session=fake_session, git=fake_git, clock=clock)


@pytest.fixture
def engine(fake_docker, builder, store):
    from apps.orchestrator import OrchestrationEngine
    return OrchestrationEngine(fake_docker, builder, store)
