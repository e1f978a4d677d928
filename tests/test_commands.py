"""Tests for the command pipeline and the argument parser."""

import json

import pytest

import main
from cli import commands, ui
from config import DEFAULT_MANIFEST_URL
from utils.errors import AppNotFound, DaemonUnavailable


def accept(url, manifest, reason):
    return 'accept'


@pytest.fixture
def comps(context):
    return commands.build_components(context, decide=accept)


def _json_output(capsys):
    return json.loads(capsys.readouterr().out)


class TestCommands:
    def test_list_json(self, context, comps, capsys):
        ui.set_json_mode(True)
        comps.engine.run(context_app(context, comps, 'dvwa'), _domain(context))
        capsys.readouterr()

        commands.cmd_list(context, comps)

        apps = {app['name']: app for app in _json_output(capsys)}
        assert apps['dvwa']['status'] == 'running'
        assert apps['webgoat']['status'] is None
        assert apps['custom-sqli-lab']['type'] == 'dockerfile'

    def test_list_without_daemon(self, context, comps, fake_docker, capsys):
        ui.set_json_mode(True)
        fake_docker.down = True

        commands.cmd_list(context, comps)

        assert len(_json_output(capsys)) == 5

    def test_search(self, context, comps, capsys):
        ui.set_json_mode(True)

        commands.cmd_search(context, comps, 'xss')

        assert [app['name'] for app in _json_output(capsys)] == ['dvwa']

    def test_install_and_run(self, context, comps, capsys):
        ui.set_json_mode(True)

        commands.cmd_install(context, comps, 'dvwa')
        installed = _json_output(capsys)
        commands.cmd_run(context, comps, 'dvwa')
        running = _json_output(capsys)

        assert installed['app']['status'] == 'installed'
        assert running['app']['status'] == 'running'
        assert running['app']['hostnames'] == ['dvwa.127.0.0.1.sslip.io']

    def test_stop_and_remove(self, context, comps, capsys):
        ui.set_json_mode(True)
        commands.cmd_run(context, comps, 'dvwa')
        capsys.readouterr()

        commands.cmd_stop(context, comps, 'dvwa')
        stopped = _json_output(capsys)
        commands.cmd_remove(context, comps, 'dvwa', purge=True)
        removed = _json_output(capsys)

        assert stopped['app']['status'] == 'stopped'
        assert removed == {'success': True, 'action': 'remove', 'app': 'dvwa', 'purge': True}

    def test_status_requires_daemon(self, context, comps, fake_docker):
        fake_docker.down = True

        with pytest.raises(DaemonUnavailable):
            commands.cmd_status(context, comps)

    def test_unknown_app(self, context, comps):
        with pytest.raises(AppNotFound):
            commands.cmd_install(context, comps, 'metasploitable')

    def test_manifest_show_does_not_prompt(self, context, capsys):
        ui.set_json_mode(True)
        comps = commands.build_components(context, decide=lambda *a: pytest.fail("prompted"))

        commands.cmd_manifest_show(context, comps)

        shown = _json_output(capsys)
        assert shown['accepted'] is False
        assert shown['manifest']['meta']['author'] == 'Lab Team'

    def test_manifest_accepted_and_forget(self, context, comps, capsys):
        ui.set_json_mode(True)
        commands.load_catalog(context, comps)

        commands.cmd_manifest_accepted(context, comps)
        accepted = _json_output(capsys)
        commands.cmd_manifest_forget(context, comps)
        forgotten = _json_output(capsys)

        assert [r['manifest_url'] for r in accepted] == [context.settings.manifest_url]
        assert forgotten == {'success': True, 'url': context.settings.manifest_url}
        assert comps.trust.list_accepted() == []


def context_app(context, comps, name):
    return commands.find_app(commands.load_catalog(context, comps), name)


def _domain(context):
    from apps.orchestrator import DomainConfig
    return DomainConfig.from_settings(context.settings)


class TestParser:
    def test_defaults(self):
        settings = main.settings_from_args(main.build_parser().parse_args(['list']))

        assert settings.manifest_url == DEFAULT_MANIFEST_URL
        assert settings.effective_domain == '127.0.0.1.sslip.io'
        assert settings.https is False
        assert settings.auto_accept is False

    @pytest.mark.parametrize('argv', [
        ['--https', '--domain', 'lab.local', '-y', 'run', 'dvwa'],
        ['run', 'dvwa', '--https', '--domain', 'lab.local', '-y'],
    ])
    def test_global_options_before_or_after_command(self, argv):
        args = main.build_parser().parse_args(argv)
        settings = main.settings_from_args(args)

        assert args.app == 'dvwa'
        assert settings.https is True
        assert settings.auto_accept is True
        assert settings.effective_domain == 'lab.local'

    def test_resolve_address(self):
        args = main.build_parser().parse_args(['--resolve-address', '10.0.0.5', 'status'])

        assert main.settings_from_args(args).effective_domain == '10.0.0.5.sslip.io'

    def test_rejects_bad_resolve_address(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args(['--resolve-address', 'not-an-ip', 'status'])

    def test_remove_purge_and_forget_url(self):
        parser = main.build_parser()

        assert parser.parse_args(['remove', 'dvwa', '--purge']).purge is True
        assert parser.parse_args(['manifest', 'forget', 'https://x.test/m.yml']).url == 'https://x.test/m.yml'

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args([])


class TestMain:
    def test_errors_exit_with_status_one(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv('VULN_PKG_HOME', str(tmp_path / 'home'))

        def broken(args, ctx, comps):
            raise AppNotFound('ghost')

        monkeypatch.setattr(main, 'dispatch', broken)

        assert main.main(['--json', 'install', 'ghost']) == 1
        assert _json_output(capsys) == {'success': False, 'error': "Application 'ghost' not found in manifest"}

    def test_interrupt_exits_130(self, tmp_path, monkeypatch):
        monkeypatch.setenv('VULN_PKG_HOME', str(tmp_path / 'home'))

        def interrupted(args, ctx, comps):
            raise KeyboardInterrupt

        monkeypatch.setattr(main, 'dispatch', interrupted)

        assert main.main(['status']) == 130

    def test_accepted_manifests_on_fresh_home(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv('VULN_PKG_HOME', str(tmp_path / 'home'))

        assert main.main(['manifest', 'accepted', '--json']) == 0
        assert _json_output(capsys) == []
        assert (tmp_path / 'home' / 'manifests').is_dir()
