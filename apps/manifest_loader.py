# vuln-pkg v0.3 - Manifest fetching and caching
import dataclasses
import hashlib
import logging
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from apps.models import parse_manifest
from config import HTTP_TIMEOUT
from utils.errors import ManifestFetchError

_log = logging.getLogger(__name__)


def cache_key(url):
    '''Stable cache filename for a manifest URL'''
    return hashlib.sha256(url.encode('utf-8')).hexdigest()[:16] + '.yml'


def _local_path(url):
    '''Filesystem path for file:// URLs and bare paths, None for remote URLs'''
    if url.startswith('file://'):
        return Path(unquote(urlparse(url).path))
    if '://' not in url:
        return Path(url).expanduser()
    return None


class ManifestStore:
    '''Fetches manifests, keeps a URL-keyed cache and falls back to it when offline'''

    def __init__(self, cache_dir, session=None, timeout=HTTP_TIMEOUT):
        self.cache_dir = Path(cache_dir)
        self.session = session or requests.Session()
        self.timeout = timeout

    def cache_path(self, url):
        return self.cache_dir / cache_key(url)

    def _read_source(self, url):
        path = _local_path(url)
        if path is not None:
            try:
                return path.read_text(encoding='utf-8')
            except OSError as e:
                raise ManifestFetchError(url, e.strerror or str(e))

        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ManifestFetchError(url, str(e))
        return response.text

    def _write_cache(self, url, text):
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.cache_path(url)
        tmp = path.with_suffix('.tmp')
        tmp.write_text(text, encoding='utf-8')
        tmp.replace(path)

    def cached(self, url):
        '''Parse the cached copy of a manifest, or None when there is none'''
        path = self.cache_path(url)
        if not path.exists():
            return None
        return parse_manifest(path.read_text(encoding='utf-8'))

    def fetch(self, url):
        """Fetch, parse and validate the manifest at url.

        A failed fetch falls back to the cached copy (marked degraded).
        Parse and validation errors always propagate, cached or not.
        """
        _log.info("Fetching manifest from %s", url)
        try:
            text = self._read_source(url)
        except ManifestFetchError as e:
            manifest = self.cached(url)
            if manifest is None:
                raise
            _log.warning("%s; using cached copy from %s", e, self.cache_path(url))
            return dataclasses.replace(manifest, degraded=True)

        manifest = parse_manifest(text)
        self._write_cache(url, text)
        _log.info("Loaded %d applications from %s", len(manifest.apps), url)
        return manifest
