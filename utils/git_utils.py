import logging
import os
import shutil
from pathlib import Path

from utils.docker_progress import run_cancellable, run_with_progress
from utils.errors import GitError

_log = logging.getLogger(__name__)


def _last_line(text):
    lines = [line.strip() for line in (text or '').splitlines() if line.strip()]
    return lines[-1] if lines else 'unknown error'


class GitCLI:
    '''Clones and updates per-app repositories with the git command line client'''

    def __init__(self, binary='git', show_progress=True):
        self.binary = binary
        self.show_progress = show_progress
        # Never block on a credential prompt
        self.env = dict(os.environ, GIT_TERMINAL_PROMPT='0')

    def _run(self, repo, args, cwd=None, message=None):
        command = [self.binary] + list(args)
        try:
            if message:
                return run_with_progress(command, message, show_progress=self.show_progress, cwd=cwd, env=self.env)
            return run_cancellable(command, cwd=cwd, env=self.env)
        except FileNotFoundError:
            raise GitError(repo, f"'{self.binary}' executable not found. Install git first.")

    def _check(self, repo, args, cwd=None, message=None):
        result = self._run(repo, args, cwd=cwd, message=message)
        if result.returncode != 0:
            raise GitError(repo, _last_line(result.stderr))
        return result.stdout.strip()

    def _verify(self, repo, dest, rev):
        '''Commit SHA for rev, or None when it does not name a commit'''
        result = self._run(repo, ['rev-parse', '--verify', '--quiet', f"{rev}^{{commit}}"], cwd=dest)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def clone(self, repo, dest):
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._check(repo, ['clone', '--quiet', repo, str(dest)], message=f"Cloning {repo}")
        except BaseException:
            # A half-written clone would be mistaken for a valid workspace next time
            shutil.rmtree(dest, ignore_errors=True)
            raise

    def fetch(self, repo, dest):
        self._check(repo, ['remote', 'set-url', 'origin', repo], cwd=dest)
        self._check(repo, ['fetch', '--quiet', '--force', '--tags', '--prune', 'origin'],
                    cwd=dest, message=f"Fetching {repo}")

    def resolve_ref(self, repo, dest, ref=None):
        '''Commit SHA that ref (branch, tag or commit; None for the remote default branch) points to'''
        if ref is None:
            self._run(repo, ['remote', 'set-head', 'origin', '--auto'], cwd=dest)
            sha = self._verify(repo, dest, 'refs/remotes/origin/HEAD')
            if sha is None:
                raise GitError(repo, "could not determine the remote default branch")
            return sha

        for candidate in (f"refs/remotes/origin/{ref}", f"refs/tags/{ref}", ref):
            sha = self._verify(repo, dest, candidate)
            if sha:
                return sha

        # Commits not reachable from any advertised ref need an explicit fetch
        result = self._run(repo, ['fetch', '--quiet', 'origin', ref], cwd=dest)
        if result.returncode == 0:
            sha = self._verify(repo, dest, 'FETCH_HEAD')
            if sha:
                return sha
        raise GitError(repo, f"ref '{ref}' not found")

    def checkout(self, repo, dest, sha):
        self._check(repo, ['checkout', '--quiet', '--force', '--detach', sha], cwd=dest)
        self._check(repo, ['clean', '-fdx', '--quiet'], cwd=dest)

    def sync(self, repo, dest, ref=None):
        """Make dest a clean checkout of repo at ref and return the commit SHA.

        An existing clone is fetched and checked out instead of cloned again.
        """
        dest = Path(dest)
        if (dest / '.git').is_dir():
            _log.info("Updating existing clone in %s", dest)
            self.fetch(repo, dest)
        else:
            if dest.exists():
                shutil.rmtree(dest)
            self.clone(repo, dest)

        sha = self.resolve_ref(repo, dest, ref)
        self.checkout(repo, dest, sha)
        _log.info("%s checked out at %s", repo, sha[:12])
        return sha
