# vuln-pkg v0.3 - Durable engine state
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from utils.errors import StateCorrupted

_log = logging.getLogger(__name__)


class AppStatus(Enum):
    INSTALLED = "installed"
    RUNNING = "running"
    STOPPED = "stopped"


class ImageSource(Enum):
    PREBUILT = "prebuilt"
    DOCKERFILE = "dockerfile"
    GIT = "git"


@dataclass
class AppState:
    name: str
    status: AppStatus
    image_ref: str
    image_source: ImageSource
    container_id: Optional[str] = None
    build_timestamp: Optional[str] = None
    git_commit_sha: Optional[str] = None
    assigned_ports: List[Tuple[int, int]] = field(default_factory=list)
    hostnames: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'name': self.name,
            'status': self.status.value,
            'container_id': self.container_id,
            'image_ref': self.image_ref,
            'image_source': self.image_source.value,
            'build_timestamp': self.build_timestamp,
            'git_commit_sha': self.git_commit_sha,
            'assigned_ports': [list(pair) for pair in self.assigned_ports],
            'hostnames': list(self.hostnames),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            name=data['name'],
            status=AppStatus(data['status']),
            image_ref=data['image_ref'],
            image_source=ImageSource(data.get('image_source', 'prebuilt')),
            container_id=data.get('container_id'),
            build_timestamp=data.get('build_timestamp'),
            git_commit_sha=data.get('git_commit_sha'),
            assigned_ports=[(int(c), int(h)) for c, h in data.get('assigned_ports', [])],
            hostnames=list(data.get('hostnames', [])),
        )


@dataclass
class EngineState:
    network_id: Optional[str] = None
    proxy_container_id: Optional[str] = None
    apps: Dict[str, AppState] = field(default_factory=dict)

    def to_dict(self):
        return {
            'network_id': self.network_id,
            'proxy_container_id': self.proxy_container_id,
            'apps': {name: app.to_dict() for name, app in sorted(self.apps.items())},
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ValueError("state root must be an object")
        apps = data.get('apps') or {}
        if not isinstance(apps, dict):
            raise ValueError("'apps' must be an object keyed by app name")
        return cls(
            network_id=data.get('network_id'),
            proxy_container_id=data.get('proxy_container_id'),
            apps={name: AppState.from_dict(app) for name, app in apps.items()},
        )


def atomic_write_json(path, data):
    '''Write JSON next to path, fsync, then rename over it'''
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
            f.write('\n')
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class StateStore:
    '''Owns state.json; every write replaces the file atomically'''

    def __init__(self, state_file):
        self.state_file = Path(state_file)

    def _read(self):
        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                return EngineState.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise StateCorrupted(self.state_file, e)

    def load(self):
        '''Load the engine state; missing or corrupted files yield an empty state'''
        if not self.state_file.exists():
            return EngineState()
        try:
            return self._read()
        except StateCorrupted as e:
            backup = self.state_file.with_name(self.state_file.name + '.corrupt')
            try:
                os.replace(self.state_file, backup)
            except OSError:
                backup = None
            _log.warning(
                "%s. Starting from an empty state; Docker remains the source of truth%s.",
                e, f" (bad file kept at {backup})" if backup else ''
            )
            return EngineState()

    def save(self, state):
        atomic_write_json(self.state_file, state.to_dict())

    def update(self, change):
        '''Load the latest state, apply change, persist and return its result.
        Nothing is written when change raises.
        '''
        state = self.load()
        result = change(state)
        self.save(state)
        return result
