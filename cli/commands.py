# vuln-pkg v0.3 - Command pipeline
import logging
import sys
from dataclasses import dataclass

from apps.manifest_loader import ManifestStore
from apps.orchestrator import DomainConfig, OrchestrationEngine
from apps.package_builder import PackageBuilder
from apps.trust import TrustDecision, TrustManager
from cli import ui
from utils.errors import AppNotFound, DaemonUnavailable, TrustRejected
from utils.state_store import StateStore

_log = logging.getLogger(__name__)


@dataclass
class Components:
    store: StateStore
    manifests: ManifestStore
    trust: TrustManager
    builder: PackageBuilder
    engine: OrchestrationEngine


def build_components(ctx, decide=None, show=None):
    '''Wire every component for one command from the context'''
    if decide is None and not ui.is_json_mode() and sys.stdin.isatty():
        decide = ui.prompt_trust_decision
        show = show or ui.show_manifest_yaml

    store = StateStore(ctx.paths.state_file)
    builder = PackageBuilder(ctx.docker, ctx.paths.repos_dir, timeout=ctx.settings.http_timeout)
    return Components(
        store=store,
        manifests=ManifestStore(ctx.paths.manifests_dir, timeout=ctx.settings.http_timeout),
        trust=TrustManager(ctx.paths.accepted_manifests_file, decide=decide, show=show),
        builder=builder,
        engine=OrchestrationEngine(ctx.docker, builder, store),
    )


def load_catalog(ctx, comps):
    '''Fetch the configured manifest and make sure it is trusted'''
    url = ctx.settings.manifest_url
    manifest = comps.manifests.fetch(url)

    decision = comps.trust.authorize(url, manifest, auto_accept=ctx.settings.auto_accept)
    if decision is TrustDecision.REJECTED:
        raise TrustRejected(url)
    return manifest


def find_app(manifest, name):
    app = manifest.find_app(name)
    if app is None:
        raise AppNotFound(name)
    return app


def _current_states(comps):
    '''App states reconciled with the daemon when it is reachable'''
    try:
        comps.engine.status()
    except DaemonUnavailable as e:
        _log.debug("Skipping reconciliation: %s", e)
    return comps.store.load().apps


# ==================== Read-only commands ====================

def cmd_list(ctx, comps):
    manifest = load_catalog(ctx, comps)
    ui.show_app_table(f"Applications ({len(manifest.apps)})", manifest.apps, _current_states(comps))


def cmd_search(ctx, comps, term):
    manifest = load_catalog(ctx, comps)
    matches = manifest.search(term)
    ui.show_app_table(f"Search results for '{term}' ({len(matches)})", matches, _current_states(comps))


def cmd_status(ctx, comps):
    ui.show_status_table(comps.engine.status())


# ==================== Lifecycle commands ====================

def cmd_install(ctx, comps, name):
    app = find_app(load_catalog(ctx, comps), name)
    ui.show_info(f"Installing {app.name} ({app.package_type})")
    entry = comps.engine.install(app)
    ui.show_app_state('install', app, entry)


def cmd_run(ctx, comps, name):
    app = find_app(load_catalog(ctx, comps), name)
    domain_config = DomainConfig.from_settings(ctx.settings)
    ui.show_info(f"Starting {app.name}")
    entry = comps.engine.run(app, domain_config)
    ui.show_app_state('run', app, entry, https=domain_config.https)


def cmd_stop(ctx, comps, name):
    entry = comps.engine.stop(name)
    if ui.is_json_mode():
        ui.print_json({'success': True, 'action': 'stop', 'app': entry.to_dict()})
    else:
        ui.show_success(f"Stopped {name}")


def cmd_remove(ctx, comps, name, purge=False):
    comps.engine.remove(name, purge=purge)
    if ui.is_json_mode():
        ui.print_json({'success': True, 'action': 'remove', 'app': name, 'purge': purge})
    else:
        ui.show_success(f"Removed {name}" + (" (image and workspace purged)" if purge else ""))


def cmd_rebuild(ctx, comps, name):
    app = find_app(load_catalog(ctx, comps), name)
    ui.show_info(f"Rebuilding {app.name}")
    entry = comps.engine.rebuild(app)
    ui.show_app_state('rebuild', app, entry)


# ==================== Manifest commands ====================

def cmd_manifest_show(ctx, comps):
    url = ctx.settings.manifest_url
    manifest = comps.manifests.fetch(url)
    trusted = comps.trust.is_trusted(url, manifest)
    if ui.is_json_mode():
        ui.print_json({'url': url, 'accepted': trusted, 'manifest': manifest.to_dict()})
        return
    ui.show_manifest_info(url, manifest)
    ui.show_manifest_yaml(manifest)
    if trusted:
        ui.show_success("This manifest has been accepted")
    elif comps.trust.get(url) is not None:
        ui.show_warning("This manifest changed since it was accepted")
    else:
        ui.show_warning("This manifest has NOT been accepted yet")


def cmd_manifest_accepted(ctx, comps):
    ui.show_accepted_manifests(comps.trust.list_accepted())


def cmd_manifest_forget(ctx, comps, url=None):
    url = url or ctx.settings.manifest_url
    forgotten = comps.trust.forget(url)
    if ui.is_json_mode():
        ui.print_json({'success': forgotten, 'url': url})
    elif forgotten:
        ui.show_success(f"Forgot manifest {url}")
    else:
        ui.show_warning(f"Manifest {url} was not accepted")
