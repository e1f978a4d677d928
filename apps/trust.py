# vuln-pkg v0.3 - Manifest trust decisions
import hashlib
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from utils.state_store import atomic_write_json

_log = logging.getLogger(__name__)


class TrustDecision(Enum):
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


# Answers a decision callback may give
ACCEPT = 'accept'
REJECT = 'reject'
SHOW = 'show'

# Why a decision is needed
REASON_NEW = 'new'
REASON_CHANGED = 'changed'


@dataclass
class TrustRecord:
    manifest_url: str
    fingerprint: str
    accepted_at: str
    author: Optional[str] = None
    email: Optional[str] = None
    url: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, manifest_url, data):
        return cls(
            manifest_url=manifest_url,
            fingerprint=data.get('fingerprint', ''),
            accepted_at=data.get('accepted_at', ''),
            author=data.get('author'),
            email=data.get('email'),
            url=data.get('url'),
            description=data.get('description'),
        )

    def to_dict(self):
        data = asdict(self)
        del data['manifest_url']
        return data


def fingerprint(manifest):
    '''sha256 over the canonical JSON form of the manifest body and metadata'''
    canonical = json.dumps(manifest.to_dict(), sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return 'sha256:' + hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class TrustManager:
    '''
    Tracks which manifest URLs the user has accepted and for which content.
    Records are keyed by URL and stored in accepted-manifests.json.
    '''

    def __init__(self, records_file, decide=None, show=None, clock=None):
        self.records_file = Path(records_file)
        self.decide = decide
        self.show = show
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _load(self):
        if not self.records_file.exists():
            return {}
        try:
            with open(self.records_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return {url: TrustRecord.from_dict(url, record)
                    for url, record in data.get('manifests', {}).items()}
        except (OSError, ValueError, AttributeError) as e:
            _log.warning("Could not read %s (%s); every manifest will be treated as unseen", self.records_file, e)
            return {}

    def _save(self, records):
        atomic_write_json(self.records_file, {
            'manifests': {url: record.to_dict() for url, record in sorted(records.items())}
        })

    def get(self, url):
        return self._load().get(url)

    def list_accepted(self):
        return sorted(self._load().values(), key=lambda r: r.accepted_at)

    def is_trusted(self, url, manifest):
        record = self.get(url)
        return record is not None and record.fingerprint == fingerprint(manifest)

    def accept(self, url, manifest):
        records = self._load()
        meta = manifest.meta
        records[url] = TrustRecord(
            manifest_url=url,
            fingerprint=fingerprint(manifest),
            accepted_at=self.clock().isoformat(),
            author=meta.author,
            email=meta.email,
            url=meta.url,
            description=meta.description,
        )
        self._save(records)
        return records[url]

    def forget(self, url):
        '''Drop the record for url; returns False if there was none'''
        records = self._load()
        if url not in records:
            return False
        del records[url]
        self._save(records)
        return True

    def _ask(self, url, manifest, reason):
        if self.decide is None:
            _log.warning("Manifest %s is not trusted and no one can be asked; pass --yes to accept it", url)
            return REJECT
        while True:
            answer = self.decide(url, manifest, reason)
            if answer != SHOW:
                return answer
            if self.show is not None:
                self.show(manifest)

    def authorize(self, url, manifest, auto_accept=False):
        """Decide whether manifest, fetched from url, may be used.

        A known URL whose content fingerprint changed since it was accepted is
        treated like an unseen one and goes through the decision flow again.
        """
        if not manifest.is_signed:
            _log.warning("Manifest %s is not signed; its origin cannot be verified", url)

        record = self.get(url)
        if record is not None and record.fingerprint == fingerprint(manifest):
            return TrustDecision.AUTHORIZED

        reason = REASON_NEW if record is None else REASON_CHANGED
        if reason == REASON_CHANGED:
            _log.warning("Manifest %s changed since it was accepted on %s", url, record.accepted_at)

        if auto_accept:
            _log.info("Auto-accepting manifest %s", url)
            self.accept(url, manifest)
            return TrustDecision.AUTHORIZED

        if self._ask(url, manifest, reason) == ACCEPT:
            self.accept(url, manifest)
            return TrustDecision.AUTHORIZED
        return TrustDecision.REJECTED
