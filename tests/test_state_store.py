"""Tests for the durable state file."""

import json
import logging
import os

import pytest

from utils import state_store
from utils.state_store import AppState, AppStatus, EngineState, ImageSource, StateStore


def _state():
    return EngineState(
        network_id='net-1',
        proxy_container_id='proxy-1',
        apps={
            'dvwa': AppState(
                name='dvwa',
                status=AppStatus.RUNNING,
                image_ref='vulnerables/web-dvwa:latest',
                image_source=ImageSource.PREBUILT,
                container_id='c-1',
                hostnames=['dvwa.127.0.0.1.sslip.io'],
            ),
            'juice-shop': AppState(
                name='juice-shop',
                status=AppStatus.INSTALLED,
                image_ref='vuln-pkg/juice-shop:15.0',
                image_source=ImageSource.GIT,
                build_timestamp='2024-01-01T00:00:01+00:00',
                git_commit_sha='a' * 40,
                assigned_ports=[(21, 21)],
            ),
        },
    )


class TestStateStore:
    def test_missing_file_is_empty_state(self, tmp_path):
        assert StateStore(tmp_path / 'state.json').load() == EngineState()

    def test_save_and_load(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        store.save(_state())

        assert store.load() == _state()

    def test_save_leaves_no_temporary_files(self, tmp_path):
        StateStore(tmp_path / 'state.json').save(_state())

        assert os.listdir(tmp_path) == ['state.json']

    def test_failed_write_keeps_previous_state(self, tmp_path, monkeypatch):
        store = StateStore(tmp_path / 'state.json')
        store.save(EngineState(network_id='before'))

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(state_store.os, 'replace', broken_replace)
        with pytest.raises(OSError):
            store.save(_state())
        monkeypatch.undo()

        assert store.load().network_id == 'before'
        assert os.listdir(tmp_path) == ['state.json']

    def test_corrupted_file_recovers_with_warning(self, tmp_path, caplog):
        path = tmp_path / 'state.json'
        path.write_text('{"apps": {"dvwa": ')
        store = StateStore(path)

        with caplog.at_level(logging.WARNING):
            state = store.load()

        assert state == EngineState()
        assert 'unreadable' in caplog.text
        assert (tmp_path / 'state.json.corrupt').exists()
        assert not path.exists()

    def test_unknown_status_is_corruption(self, tmp_path):
        path = tmp_path / 'state.json'
        data = _state().to_dict()
        data['apps']['dvwa']['status'] = 'exploded'
        path.write_text(json.dumps(data))

        assert StateStore(path).load() == EngineState()

    @pytest.mark.parametrize('document', [
        {'apps': 'oops'},
        {'apps': [{'name': 'dvwa'}]},
        {'apps': {'dvwa': 'running'}},
        ['not', 'an', 'object'],
    ])
    def test_malformed_apps_are_corruption(self, tmp_path, caplog, document):
        path = tmp_path / 'state.json'
        path.write_text(json.dumps(document))

        with caplog.at_level(logging.WARNING):
            state = StateStore(path).load()

        assert state == EngineState()
        assert 'unreadable' in caplog.text
        assert (tmp_path / 'state.json.corrupt').exists()

    def test_update_applies_one_change(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        store.save(_state())

        def forget_dvwa(state):
            return state.apps.pop('dvwa')

        removed = store.update(forget_dvwa)

        assert removed.name == 'dvwa'
        assert list(store.load().apps) == ['juice-shop']

    def test_failed_update_writes_nothing(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        store.save(_state())

        def broken(state):
            state.apps.clear()
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.update(broken)

        assert store.load() == _state()

    def test_serialized_layout(self, tmp_path):
        path = tmp_path / 'state.json'
        StateStore(path).save(_state())

        data = json.loads(path.read_text())
        assert data['apps']['dvwa']['status'] == 'running'
        assert data['apps']['juice-shop']['image_source'] == 'git'
        assert data['apps']['juice-shop']['assigned_ports'] == [[21, 21]]
