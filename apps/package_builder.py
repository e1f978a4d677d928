# vuln-pkg v0.3 - Image resolution for prebuilt, Dockerfile and git packages
import logging
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import requests

from apps.models import DockerfileSource, GitSource, Prebuilt
from config import HTTP_TIMEOUT
from utils.docker_progress import filter_docker_errors
from utils.errors import ImageBuildError, InvalidOperation
from utils.git_utils import GitCLI
from utils.state_store import ImageSource
from utils.validation import resolve_within

_log = logging.getLogger(__name__)

LOG_EXCERPT_LINES = 15
DOWNLOAD_CHUNK = 64 * 1024

# "Step 3/5 : RUN make" (classic builder) or "#7 [3/5] RUN make" (BuildKit)
_CLASSIC_STEP = re.compile(r'^Step \d+/\d+ : (.+)$')
_BUILDKIT_STEP = re.compile(r'^#\d+ \[[^\]]+\] (.+)$')


@dataclass(frozen=True)
class BuildResult:
    image_ref: str
    image_source: ImageSource
    build_timestamp: Optional[str] = None
    git_commit_sha: Optional[str] = None


def summarize_build_log(log):
    '''Return (failing step, log excerpt) from docker build output'''
    lines = [line.rstrip() for line in filter_docker_errors(log).splitlines() if line.strip()]
    step = 'docker build'
    for line in lines:
        match = _CLASSIC_STEP.match(line) or _BUILDKIT_STEP.match(line)
        if match:
            step = match.group(1).strip()
    return step, '\n'.join(lines[-LOG_EXCERPT_LINES:])


def _safe_members(archive, dest):
    for member in archive.getmembers():
        if member.isdev():
            continue
        try:
            resolve_within(dest, member.name)
            if member.issym() or member.islnk():
                link_base = dest if member.islnk() else Path(resolve_within(dest, member.name)).parent
                resolve_within(link_base, member.linkname)
        except ValueError:
            raise tarfile.TarError(f"archive member '{member.name}' points outside the build context")
        yield member


class PackageBuilder:
    '''Turns an app definition into a local image reference'''

    def __init__(self, docker, repos_dir, session=None, git=None, timeout=HTTP_TIMEOUT, clock=None):
        self.docker = docker
        self.repos_dir = Path(repos_dir)
        self.session = session or requests.Session()
        self.git = git or GitCLI(show_progress=getattr(docker, 'show_progress', True))
        self.timeout = timeout
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._strategies = {
            Prebuilt: self._resolve_prebuilt,
            DockerfileSource: self._resolve_dockerfile,
            GitSource: self._resolve_git,
        }

    def workspace_for(self, name):
        return self.repos_dir / name

    def remove_workspace(self, name):
        workspace = self.workspace_for(name)
        if not workspace.exists():
            return False
        shutil.rmtree(workspace)
        return True

    def resolve(self, app, workspace_dir=None, force=False):
        '''Resolve app into a runnable image; force disables the docker build cache'''
        strategy = self._strategies[type(app.source)]
        return strategy(app, workspace_dir, force)

    def rebuild(self, app):
        if not app.is_custom:
            raise InvalidOperation(f"Application '{app.name}' is a prebuilt package and cannot be rebuilt")
        _log.info("Rebuilding %s from scratch", app.name)
        return self.resolve(app, force=True)

    # ==================== Strategies ====================

    def _resolve_prebuilt(self, app, workspace_dir, force):
        return BuildResult(image_ref=app.source.image, image_source=ImageSource.PREBUILT)

    def _resolve_dockerfile(self, app, workspace_dir, force):
        source = app.source
        tag = app.effective_image()
        with tempfile.TemporaryDirectory(prefix=f"vuln-pkg-{app.name}-") as scratch:
            scratch = Path(scratch)
            context = scratch / 'context'
            context.mkdir()

            if source.content is not None:
                text = source.content
            else:
                text = self._download_text(tag, source.source_url, 'Dockerfile')

            if source.context_url:
                self._fetch_context(tag, source.context_url, scratch / 'context.tar', context)
                # Kept outside the context so the archive's own Dockerfile cannot shadow it
                dockerfile = scratch / 'Dockerfile'
            else:
                dockerfile = context / 'Dockerfile'
            dockerfile.write_text(text, encoding='utf-8')

            self._build(tag, context, dockerfile, no_cache=force)

        return BuildResult(
            image_ref=tag,
            image_source=ImageSource.DOCKERFILE,
            build_timestamp=self.clock().isoformat(),
        )

    def _resolve_git(self, app, workspace_dir, force):
        source = app.source
        tag = app.effective_image()
        checkout = Path(workspace_dir) if workspace_dir else self.workspace_for(app.name)

        sha = self.git.sync(source.repo, checkout, source.ref)

        try:
            dockerfile = Path(resolve_within(checkout, source.effective_dockerfile_path))
        except ValueError as e:
            raise ImageBuildError(tag, 'locate Dockerfile', str(e))
        if not dockerfile.is_file():
            raise ImageBuildError(tag, 'locate Dockerfile',
                                  f"{source.effective_dockerfile_path} not found in {source.repo} at {sha[:12]}")

        self._build(tag, checkout, dockerfile, no_cache=force)

        return BuildResult(
            image_ref=tag,
            image_source=ImageSource.GIT,
            build_timestamp=self.clock().isoformat(),
            git_commit_sha=sha,
        )

    # ==================== Helpers ====================

    def _download(self, tag, url, what, target):
        _log.info("Fetching %s from %s", what, url)
        try:
            with self.session.get(url, timeout=self.timeout, stream=True) as response:
                response.raise_for_status()
                with open(target, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as e:
            raise ImageBuildError(tag, f"fetch {what} from {url}", str(e))

    def _download_text(self, tag, url, what):
        _log.info("Fetching %s from %s", what, url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ImageBuildError(tag, f"fetch {what} from {url}", str(e))
        return response.text

    def _fetch_context(self, tag, url, archive_path, context):
        self._download(tag, url, 'build context', archive_path)
        try:
            with tarfile.open(archive_path, 'r:*') as archive:
                members = list(_safe_members(archive, context))
                if hasattr(tarfile, 'data_filter'):
                    archive.extractall(context, members=members, filter='data')
                else:
                    archive.extractall(context, members=members)
        except (tarfile.TarError, OSError) as e:
            raise ImageBuildError(tag, f"extract build context from {url}", str(e))

    def _build(self, tag, context, dockerfile, no_cache=False):
        result = self.docker.build_image(tag, context, dockerfile, no_cache=no_cache)
        if result.returncode != 0:
            step, excerpt = summarize_build_log('\n'.join([result.stdout or '', result.stderr or '']))
            raise ImageBuildError(tag, step, excerpt)
        _log.info("Built %s", tag)
