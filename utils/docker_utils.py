import json
import logging
import re
import subprocess

from utils.docker_progress import filter_docker_errors, run_cancellable, run_with_progress
from utils.errors import DaemonUnavailable, DockerError

_log = logging.getLogger(__name__)

DAEMON_HINT = 'Start Docker Desktop or the Docker service, then retry.'


def describe_docker_error(stderr):
    """Parse Docker stderr into a short, readable error message."""
    text = (stderr or '').strip()
    if not text:
        return 'Unknown error. Check Docker logs for details.'
    lower = text.lower()

    if 'port is already allocated' in lower:
        m = re.search(r'(\d+\.\d+\.\d+\.\d+:\d+)', text)
        port = m.group(1) if m else 'unknown'
        return f'Port {port} is already in use. Stop whatever is bound to it first.'

    if 'no such image' in lower or 'manifest unknown' in lower or 'pull access denied' in lower:
        return 'Docker image not found. Check the image name and your internet connection.'

    if 'network' in lower and 'not found' in lower:
        return 'Docker network error. Try restarting Docker.'

    if 'permission denied' in lower:
        return 'Permission denied. Add your user to the docker group or run with sudo.'

    if 'no space left' in lower:
        return 'No disk space left. Free up space and try again.'

    # Fallback: extract last meaningful line
    for line in reversed(filter_docker_errors(text).splitlines()):
        line = line.strip()
        if line and not line.startswith(('time=', '|')):
            return line[:200]

    return 'Unknown error. Check Docker logs for details.'


def _is_daemon_down(stderr):
    lower = (stderr or '').lower()
    return 'is the docker daemon running' in lower or 'cannot connect to the docker daemon' in lower


def _is_missing(stderr):
    lower = (stderr or '').lower()
    return 'no such' in lower or 'not found' in lower


def parse_labels(raw):
    '''Parse the comma-joined label string printed by `docker ps`'''
    labels = {}
    if not raw:
        return labels
    for item in raw.split(','):
        key, sep, value = item.partition('=')
        if sep:
            labels[key.strip()] = value
    return labels


class DockerCLI:
    '''Drives the local Docker daemon through the docker command line client'''

    def __init__(self, binary='docker', show_progress=True):
        self.binary = binary
        self.show_progress = show_progress

    # ==================== Plumbing ====================

    def _run(self, args, timeout=None):
        command = [self.binary] + list(args)
        try:
            result = run_cancellable(command, timeout=timeout)
        except FileNotFoundError:
            raise DaemonUnavailable(f"Docker is not installed (no '{self.binary}' executable found). Install Docker first.")
        except subprocess.TimeoutExpired:
            raise DaemonUnavailable(f"Docker is not responding (timeout). {DAEMON_HINT}")
        if result.returncode != 0 and _is_daemon_down(result.stderr):
            raise DaemonUnavailable(f"Cannot reach the Docker daemon. {DAEMON_HINT}")
        return result

    def _run_long(self, args, message):
        command = [self.binary] + list(args)
        try:
            result = run_with_progress(command, message, show_progress=self.show_progress)
        except FileNotFoundError:
            raise DaemonUnavailable(f"Docker is not installed (no '{self.binary}' executable found). Install Docker first.")
        if result.returncode != 0 and _is_daemon_down(result.stderr):
            raise DaemonUnavailable(f"Cannot reach the Docker daemon. {DAEMON_HINT}")
        return result

    def _check(self, action, args, timeout=None):
        result = self._run(args, timeout=timeout)
        if result.returncode != 0:
            raise DockerError(action, describe_docker_error(result.stderr))
        return result.stdout.strip()

    def ping(self):
        '''Fail fast with an actionable message when the daemon is unreachable'''
        result = self._run(['info', '--format', '{{json .ServerVersion}}'], timeout=10)
        if result.returncode != 0:
            raise DaemonUnavailable(f"Docker daemon unavailable: {describe_docker_error(result.stderr)}")
        return True

    # ==================== Networks ====================

    def network_id(self, name):
        result = self._run(['network', 'inspect', name, '--format', '{{.Id}}'])
        if result.returncode != 0:
            if _is_missing(result.stderr):
                return None
            raise DockerError('network inspect', describe_docker_error(result.stderr))
        return result.stdout.strip() or None

    def create_network(self, name, labels=None):
        args = ['network', 'create', '--driver', 'bridge']
        for key, value in (labels or {}).items():
            args += ['--label', f"{key}={value}"]
        args.append(name)
        return self._check('network create', args)

    # ==================== Images ====================

    def image_id(self, ref):
        '''Local image ID for ref, or None when the image is not present'''
        result = self._run(['image', 'inspect', ref, '--format', '{{.Id}}'])
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def image_exists(self, ref):
        return self.image_id(ref) is not None

    def pull_image(self, ref):
        result = self._run_long(['pull', ref], f"Pulling {ref}")
        if result.returncode != 0:
            raise DockerError(f"pull of {ref}", describe_docker_error(result.stderr))

    def build_image(self, tag, context_dir, dockerfile, no_cache=False):
        '''Run docker build; returns the CompletedProcess so callers can inspect the log'''
        args = ['build', '--tag', tag, '--file', str(dockerfile)]
        if no_cache:
            args.append('--no-cache')
        args.append(str(context_dir))
        return self._run_long(args, f"Building {tag}")

    def remove_image(self, ref):
        '''Remove an image; returns False when it did not exist'''
        result = self._run(['image', 'rm', '--force', ref])
        if result.returncode != 0:
            if _is_missing(result.stderr):
                return False
            raise DockerError(f"image removal of {ref}", describe_docker_error(result.stderr))
        return True

    # ==================== Containers ====================

    def inspect_container(self, name_or_id):
        '''Return the inspect document of a container, or None if it does not exist'''
        result = self._run(['container', 'inspect', name_or_id])
        if result.returncode != 0:
            if _is_missing(result.stderr):
                return None
            raise DockerError('container inspect', describe_docker_error(result.stderr))
        try:
            documents = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise DockerError('container inspect', f"unexpected output: {e}")
        return documents[0] if documents else None

    def create_container(self, name, image, network=None, labels=None, env=None,
                         publish=None, volumes=None, command=None):
        args = ['create', '--name', name]
        if network:
            args += ['--network', network]
        for key, value in (labels or {}).items():
            args += ['--label', f"{key}={value}"]
        for item in env or []:
            args += ['--env', item]
        for spec in publish or []:
            args += ['--publish', spec]
        for spec in volumes or []:
            args += ['--volume', spec]
        args.append(image)
        args += list(command or [])
        return self._check(f"create of container {name}", args)

    def start_container(self, name_or_id):
        self._check('container start', ['start', name_or_id])

    def stop_container(self, name_or_id, timeout=10):
        self._check('container stop', ['stop', '--time', str(timeout), name_or_id])

    def remove_container(self, name_or_id):
        '''Force-remove a container; returns False when it did not exist'''
        result = self._run(['rm', '--force', name_or_id])
        if result.returncode != 0:
            if _is_missing(result.stderr):
                return False
            raise DockerError('container removal', describe_docker_error(result.stderr))
        return True

    def list_containers(self, label):
        '''All containers (running or not) carrying the given label key'''
        output = self._check('container list', [
            'ps', '--all', '--no-trunc', '--filter', f"label={label}", '--format', '{{json .}}'
        ])
        containers = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                _log.debug("skipping unparsable docker ps line: %s", line)
                continue
            containers.append({
                'id': row.get('ID', ''),
                'name': row.get('Names', ''),
                'state': row.get('State', ''),
                'image': row.get('Image', ''),
                'labels': parse_labels(row.get('Labels', '')),
            })
        return containers
