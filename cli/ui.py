import json

import inquirer
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

console = Console()

_json_mode = False


def set_json_mode(enabled):
    '''In JSON mode only machine-readable documents reach stdout'''
    global _json_mode
    _json_mode = enabled


def is_json_mode():
    return _json_mode


def print_json(data):
    print(json.dumps(data, indent=2, sort_keys=False))


def show_success(message):
    '''Show success message in green'''
    if not _json_mode:
        console.print(f"  ✅ {message}", style="bold green")


def show_error(message):
    '''Show error message in red (a JSON error document in JSON mode)'''
    if _json_mode:
        print_json({'success': False, 'error': message})
    else:
        console.print(f"  ❌ {message}", style="bold red")


def show_warning(message):
    '''Show warning message in yellow'''
    if not _json_mode:
        console.print(f"  ⚠️  {message}", style="yellow")


def show_info(message):
    '''Show info message in blue'''
    if not _json_mode:
        console.print(f"  ℹ️  {message}", style="bold blue")


def show_result_panel(content, title="Success"):
    '''Show result info in a styled panel'''
    if _json_mode:
        return
    panel = Panel(
        content,
        title=f"[bold green]{title}[/bold green]",
        border_style="green",
        padding=(1, 2)
    )
    console.print()
    console.print(panel)


# ==================== Apps ====================

def _status_style(status):
    return {
        'running': "🟢 running",
        'stopped': "🔴 stopped",
        'installed': "⚪ installed",
    }.get(status, status or "-")


def show_app_table(title, apps, states):
    '''List manifest apps with their local status'''
    if _json_mode:
        print_json([
            dict(app.to_dict(), status=states[app.name].status.value if app.name in states else None)
            for app in apps
        ])
        return

    if not apps:
        show_info("No applications found")
        return

    table = Table(title=title, title_style="bold cyan", border_style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Type")
    table.add_column("Ports")
    table.add_column("Tags", style="dim")
    table.add_column("Status")
    table.add_column("Description", overflow="fold")

    for app in apps:
        state = states.get(app.name)
        ports = ', '.join(
            str(p.port) if p.is_http else f"{p.port}/{p.protocol}" for p in app.ports
        )
        table.add_row(
            app.name,
            app.version,
            app.package_type,
            ports,
            ', '.join(app.tags),
            _status_style(state.status.value) if state else "-",
            app.description,
        )
    console.print(table)


def show_status_table(rows):
    if _json_mode:
        print_json([row.to_dict() for row in rows])
        return

    if not rows:
        show_info("No applications installed")
        return

    table = Table(title="vuln-pkg status", title_style="bold cyan", border_style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Status")
    table.add_column("Container", style="dim")
    table.add_column("Image")
    table.add_column("URLs / Ports")

    for row in rows:
        endpoints = [f"http://{host}" for host in row.hostnames]
        endpoints += [f"{host_port} -> {container_port}" for container_port, host_port in row.assigned_ports]
        name = row.name if row.tracked else f"{row.name} (untracked)"
        table.add_row(
            name,
            _status_style(row.status),
            (row.container_id or '-')[:12],
            row.image_ref or '-',
            '\n'.join(endpoints) or '-',
        )
    console.print(table)


def show_app_state(action, app, entry, https=False):
    '''Summary after install/run/stop/rebuild'''
    if _json_mode:
        print_json({'success': True, 'action': action, 'app': entry.to_dict()})
        return

    lines = Text()
    lines.append(f"{app.name} ", style="bold")
    lines.append(f"({entry.image_ref})\n", style="dim")
    lines.append(f"Status: {entry.status.value}\n")
    if entry.build_timestamp:
        lines.append(f"Built:  {entry.build_timestamp}\n")
    if entry.git_commit_sha:
        lines.append(f"Commit: {entry.git_commit_sha[:12]}\n")
    if action == 'run':
        scheme = 'https' if https else 'http'
        for host in entry.hostnames:
            lines.append(f"  → {scheme}://{host}\n", style="bold cyan")
        for container_port, host_port in entry.assigned_ports:
            lines.append(f"  → localhost:{host_port} (container port {container_port})\n", style="bold cyan")
    show_result_panel(lines, title=action.capitalize())


# ==================== Manifests ====================

def show_manifest_info(url, manifest):
    if _json_mode:
        return
    meta = manifest.meta
    info = Text()
    info.append("URL:         ", style="bold")
    info.append(f"{url}\n")
    for label, value in (("Author", meta.author), ("Email", meta.email),
                         ("Website", meta.url), ("Description", meta.description)):
        info.append(f"{label + ':':<13}", style="bold")
        info.append(f"{value or 'not provided'}\n", style=None if value else "dim")
    info.append("Apps:        ", style="bold")
    info.append(f"{len(manifest.apps)}\n")
    if not manifest.is_signed:
        info.append("\nThis manifest is not signed.", style="yellow")
    console.print(Panel(info, title="Manifest", border_style="cyan"))


def show_manifest_yaml(manifest):
    if _json_mode:
        print_json(manifest.to_dict())
        return
    console.print(Syntax(manifest.to_yaml(), "yaml", line_numbers=False))


def show_accepted_manifests(records):
    if _json_mode:
        print_json([dict(record.to_dict(), manifest_url=record.manifest_url) for record in records])
        return
    if not records:
        show_info("No manifests have been accepted yet")
        return
    table = Table(title="Accepted manifests", title_style="bold cyan", border_style="cyan")
    table.add_column("URL", overflow="fold")
    table.add_column("Accepted")
    table.add_column("Author")
    table.add_column("Fingerprint", style="dim")
    for record in records:
        table.add_row(record.manifest_url, record.accepted_at, record.author or '-', record.fingerprint[:19])
    console.print(table)


def prompt_trust_decision(url, manifest, reason):
    '''Blocking accept/reject/show decision for an untrusted manifest'''
    show_manifest_info(url, manifest)
    if reason == 'changed':
        show_warning("This manifest changed since you accepted it.")
    else:
        show_warning("This manifest has not been accepted before.")

    questions = [
        inquirer.List(
            'decision',
            message="Trust this manifest?",
            choices=[
                ("Accept and remember", 'accept'),
                ("Show manifest contents", 'show'),
                ("Reject", 'reject'),
            ],
            default='reject',
        )
    ]
    answer = inquirer.prompt(questions)
    if not answer:
        return 'reject'
    return answer['decision']
