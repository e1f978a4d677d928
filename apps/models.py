# vuln-pkg v0.3 - Manifest data model
from dataclasses import dataclass, field
from typing import Optional, Tuple

import yaml

from config import IMAGE_NAMESPACE
from utils.errors import ManifestParseError, ManifestValidationError
from utils.validation import validate_app_name, validate_env_entry, validate_port

PROTOCOLS = ('http', 'tcp', 'udp')
DEFAULT_DOCKERFILE_PATH = './Dockerfile'


@dataclass(frozen=True)
class PortConfig:
    '''One exposed container port. HTTP ports go through the proxy, TCP/UDP are published directly.'''
    port: int
    protocol: str = 'http'
    label: Optional[str] = None

    @property
    def is_http(self):
        return self.protocol == 'http'

    def to_value(self):
        if self.is_http and self.label is None:
            return self.port
        value = {'port': self.port, 'protocol': self.protocol}
        if self.label is not None:
            value['label'] = self.label
        return value


# ==================== Package types ====================

@dataclass(frozen=True)
class Prebuilt:
    '''Pull a pre-built image from a registry'''
    image: str

    kind = 'prebuilt'

    def to_dict(self):
        return {'image': self.image}


@dataclass(frozen=True)
class DockerfileSource:
    '''Build from an inline or remote Dockerfile, optionally with a remote context tarball'''
    content: Optional[str] = None
    source_url: Optional[str] = None
    context_url: Optional[str] = None

    kind = 'dockerfile'

    def to_dict(self):
        data = {}
        if self.content is not None:
            data['dockerfile'] = self.content
        if self.source_url is not None:
            data['dockerfile_url'] = self.source_url
        if self.context_url is not None:
            data['context_url'] = self.context_url
        return data


@dataclass(frozen=True)
class GitSource:
    '''Clone a git repository and build from a Dockerfile inside it'''
    repo: str
    ref: Optional[str] = None
    dockerfile_path: Optional[str] = None

    kind = 'git'

    @property
    def effective_dockerfile_path(self):
        return self.dockerfile_path or DEFAULT_DOCKERFILE_PATH

    def to_dict(self):
        data = {'repo': self.repo}
        if self.ref is not None:
            data['ref'] = self.ref
        if self.dockerfile_path is not None:
            data['dockerfile_path'] = self.dockerfile_path
        return data


PACKAGE_TYPES = ('prebuilt', 'dockerfile', 'git')


def _optional_str(data, key, app_name):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ManifestValidationError(app_name, key, "must be a non-empty string")
    return value


def _parse_source(data, name):
    kind = data.get('type', 'prebuilt')
    if kind not in PACKAGE_TYPES:
        raise ManifestValidationError(name, 'type', f"must be one of {', '.join(PACKAGE_TYPES)}")

    if kind == 'prebuilt':
        image = _optional_str(data, 'image', name)
        if image is None:
            raise ManifestValidationError(name, 'image', "prebuilt apps require an image")
        return Prebuilt(image=image)

    if kind == 'dockerfile':
        content = _optional_str(data, 'dockerfile', name)
        source_url = _optional_str(data, 'dockerfile_url', name)
        if content is None and source_url is None:
            raise ManifestValidationError(name, 'dockerfile', "dockerfile apps require 'dockerfile' or 'dockerfile_url'")
        if content is not None and source_url is not None:
            raise ManifestValidationError(name, 'dockerfile', "'dockerfile' and 'dockerfile_url' are mutually exclusive")
        return DockerfileSource(
            content=content,
            source_url=source_url,
            context_url=_optional_str(data, 'context_url', name),
        )

    repo = _optional_str(data, 'repo', name)
    if repo is None:
        raise ManifestValidationError(name, 'repo', "git apps require a repo")
    ref = data.get('ref')
    return GitSource(
        repo=repo,
        ref=str(ref) if ref is not None else None,
        dockerfile_path=_optional_str(data, 'dockerfile_path', name),
    )


def _parse_port(entry, name):
    try:
        if isinstance(entry, dict):
            protocol = str(entry.get('protocol', 'http')).lower()
            if protocol not in PROTOCOLS:
                raise ValueError(f"unknown protocol '{protocol}'")
            label = entry.get('label')
            return PortConfig(
                port=validate_port(entry.get('port')),
                protocol=protocol,
                label=str(label) if label is not None else None,
            )
        return PortConfig(port=validate_port(entry))
    except ValueError as e:
        raise ManifestValidationError(name, 'ports', str(e))


# ==================== App ====================

@dataclass(frozen=True)
class App:
    name: str
    version: str
    ports: Tuple[PortConfig, ...]
    source: object
    description: str = ''
    tags: Tuple[str, ...] = ()
    env: Tuple[str, ...] = ()

    @property
    def package_type(self):
        return self.source.kind

    @property
    def is_custom(self):
        '''True for apps whose image is built locally'''
        return not isinstance(self.source, Prebuilt)

    def effective_image(self):
        if isinstance(self.source, Prebuilt):
            return self.source.image
        return f"{IMAGE_NAMESPACE}/{self.name}:{self.version}"

    @property
    def http_ports(self):
        return [p for p in self.ports if p.is_http]

    @property
    def direct_ports(self):
        return [p for p in self.ports if not p.is_http]

    def matches(self, term):
        '''Case-insensitive match against name, description and tags'''
        term = term.lower()
        if term in self.name.lower() or term in self.description.lower():
            return True
        return any(term in tag.lower() for tag in self.tags)

    @classmethod
    def from_dict(cls, data, index=0):
        if not isinstance(data, dict):
            raise ManifestValidationError(f"apps[{index}]", 'apps', "each app must be a mapping")

        raw_name = data.get('name')
        try:
            name = validate_app_name(raw_name)
        except ValueError as e:
            label = raw_name if isinstance(raw_name, str) and raw_name else f"apps[{index}]"
            raise ManifestValidationError(label, 'name', str(e))

        version = data.get('version')
        if version is None or isinstance(version, (dict, list)) or str(version).strip() == '':
            raise ManifestValidationError(name, 'version', "a version string is required")

        ports = data.get('ports')
        if not isinstance(ports, list) or not ports:
            raise ManifestValidationError(name, 'ports', "at least one port is required")

        tags = data.get('tags') or []
        if not isinstance(tags, list):
            raise ManifestValidationError(name, 'tags', "must be a list of strings")
        unique_tags = []
        for tag in tags:
            if str(tag) not in unique_tags:
                unique_tags.append(str(tag))

        env = data.get('env') or []
        if not isinstance(env, list):
            raise ManifestValidationError(name, 'env', "must be a list of KEY=VALUE strings")
        try:
            env = tuple(validate_env_entry(item) for item in env)
        except ValueError as e:
            raise ManifestValidationError(name, 'env', str(e))

        description = data.get('description') or ''

        return cls(
            name=name,
            version=str(version),
            ports=tuple(_parse_port(p, name) for p in ports),
            source=_parse_source(data, name),
            description=str(description),
            tags=tuple(unique_tags),
            env=env,
        )

    def to_dict(self):
        data = {
            'name': self.name,
            'version': self.version,
            'type': self.package_type,
        }
        data.update(self.source.to_dict())
        data['ports'] = [p.to_value() for p in self.ports]
        if self.description:
            data['description'] = self.description
        if self.tags:
            data['tags'] = list(self.tags)
        if self.env:
            data['env'] = list(self.env)
        return data


# ==================== Manifest ====================

META_FIELDS = ('author', 'email', 'url', 'description')


@dataclass(frozen=True)
class ManifestMeta:
    author: Optional[str] = None
    email: Optional[str] = None
    url: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ManifestParseError("'meta' must be a mapping")
        return cls(**{key: (str(data[key]) if data.get(key) is not None else None) for key in META_FIELDS})

    def to_dict(self):
        return {key: getattr(self, key) for key in META_FIELDS if getattr(self, key) is not None}


@dataclass(frozen=True)
class Manifest:
    meta: ManifestMeta
    apps: Tuple[App, ...]
    signature: Optional[str] = None
    # Set when the document came from the local cache after a failed fetch
    degraded: bool = field(default=False, compare=False)

    def find_app(self, name):
        for app in self.apps:
            if app.name == name:
                return app
        return None

    def search(self, term):
        return [app for app in self.apps if app.matches(term)]

    @property
    def is_signed(self):
        return bool(self.signature)

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ManifestParseError("top level must be a mapping with 'meta' and 'apps'")
        raw_apps = data.get('apps')
        if not isinstance(raw_apps, list):
            raise ManifestParseError("'apps' must be a list")

        apps = []
        seen = set()
        for index, entry in enumerate(raw_apps):
            app = App.from_dict(entry, index)
            if app.name in seen:
                raise ManifestValidationError(app.name, 'name', "duplicate app name")
            seen.add(app.name)
            apps.append(app)

        signature = data.get('signature')
        return cls(
            meta=ManifestMeta.from_dict(data.get('meta')),
            apps=tuple(apps),
            signature=str(signature) if signature is not None else None,
        )

    def to_dict(self):
        data = {'meta': self.meta.to_dict(), 'apps': [app.to_dict() for app in self.apps]}
        if self.signature is not None:
            data['signature'] = self.signature
        return data

    def to_yaml(self):
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)


_NUMERIC_TAGS = ('tag:yaml.org,2002:int', 'tag:yaml.org,2002:float')


class _ManifestLoader(yaml.SafeLoader):
    '''SafeLoader that keeps an unquoted `version: 1.10` as the string "1.10"'''

    def construct_mapping(self, node, deep=False):
        for key_node, value_node in node.value:
            if (isinstance(key_node, yaml.ScalarNode) and key_node.value == 'version'
                    and isinstance(value_node, yaml.ScalarNode) and value_node.tag in _NUMERIC_TAGS):
                value_node.tag = 'tag:yaml.org,2002:str'
        return super().construct_mapping(node, deep=deep)


def parse_manifest(text):
    '''Parse and validate a manifest document'''
    try:
        data = yaml.load(text, Loader=_ManifestLoader)
    except yaml.YAMLError as e:
        raise ManifestParseError(str(e))
    return Manifest.from_dict(data)
