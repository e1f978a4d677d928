# vuln-pkg v0.3
import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_MANIFEST_URL = os.environ.get(
    'VULN_PKG_MANIFEST_URL',
    'https://raw.githubusercontent.com/neutrno2211/vuln-pkg/main/manifest.yml'
)
HTTP_TIMEOUT = float(os.environ.get('VULN_PKG_HTTP_TIMEOUT', '30'))

# Docker naming
LABEL_KEY = 'vuln-pkg'
NETWORK_NAME = 'vuln-pkg'
PROXY_IMAGE = 'traefik:v3.0'
PROXY_CONTAINER = 'vuln-pkg-traefik'
PROXY_LABEL_VALUE = 'traefik'
CONTAINER_PREFIX = 'vuln-pkg-'
IMAGE_NAMESPACE = 'vuln-pkg'
WILDCARD_DNS_SUFFIX = 'sslip.io'


def default_state_dir():
    '''Root directory for all vuln-pkg data files'''
    override = os.environ.get('VULN_PKG_HOME')
    if override:
        return Path(override).expanduser()
    return Path.home() / '.vuln-pkg'


@dataclass(frozen=True)
class StatePaths:
    '''Persisted layout under the state root'''
    root: Path

    @property
    def state_file(self):
        return self.root / 'state.json'

    @property
    def accepted_manifests_file(self):
        return self.root / 'accepted-manifests.json'

    @property
    def manifests_dir(self):
        return self.root / 'manifests'

    @property
    def repos_dir(self):
        return self.root / 'repos'

    @property
    def images_dir(self):
        return self.root / 'images'

    def ensure(self):
        for directory in (self.manifests_dir, self.repos_dir, self.images_dir):
            directory.mkdir(parents=True, exist_ok=True)
        return self


@dataclass(frozen=True)
class Settings:
    '''Global options of one command invocation'''
    manifest_url: str = DEFAULT_MANIFEST_URL
    resolve_address: str = '127.0.0.1'
    domain: str = None
    https: bool = False
    auto_accept: bool = False
    json_output: bool = False
    http_timeout: float = HTTP_TIMEOUT

    @property
    def effective_domain(self):
        '''Custom domain, or the wildcard-DNS suffix for the resolve address'''
        if self.domain:
            return self.domain
        return f"{self.resolve_address}.{WILDCARD_DNS_SUFFIX}"


@dataclass
class Context:
    '''Everything a command needs, built once and passed down explicitly'''
    paths: StatePaths
    settings: Settings
    docker: object

    @classmethod
    def create(cls, settings, state_dir=None, docker=None):
        paths = StatePaths(Path(state_dir) if state_dir else default_state_dir()).ensure()
        if docker is None:
            from utils.docker_utils import DockerCLI
            docker = DockerCLI(show_progress=not settings.json_output)
        return cls(paths=paths, settings=settings, docker=docker)
