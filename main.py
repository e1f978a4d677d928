import argparse
import ipaddress
import logging
import os
import sys

from rich.logging import RichHandler

from config import DEFAULT_MANIFEST_URL, Context, Settings
from utils.errors import VulnPkgError

VERSION = "0.3.0"

_log = logging.getLogger(__name__)


def _ipv4(value):
    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not an IPv4 address")


def build_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--json', action='store_true', default=argparse.SUPPRESS,
                        help='Output in JSON format for automation')
    common.add_argument('-y', '--yes', action='store_true', default=argparse.SUPPRESS,
                        help='Accept untrusted manifests without prompting')
    common.add_argument('--manifest-url', default=argparse.SUPPRESS,
                        help=f"Manifest URL to fetch apps from (default: {DEFAULT_MANIFEST_URL})")
    common.add_argument('--resolve-address', type=_ipv4, default=argparse.SUPPRESS,
                        help='Address that hostnames resolve to (default: 127.0.0.1)')
    common.add_argument('--domain', default=argparse.SUPPRESS,
                        help='Domain suffix for app hostnames (default: <resolve-address>.sslip.io)')
    common.add_argument('--https', action='store_true', default=argparse.SUPPRESS,
                        help='Also route apps over HTTPS (port 443)')
    common.add_argument('-v', '--verbose', action='store_true', default=argparse.SUPPRESS,
                        help='Show debug logging')

    # Global options are accepted both before and after the subcommand
    parser = argparse.ArgumentParser(
        prog='vuln-pkg',
        description='A package manager for deliberately-vulnerable applications',
        parents=[common],
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {VERSION}")

    commands = parser.add_subparsers(dest='command', metavar='COMMAND')
    commands.required = True

    commands.add_parser('list', parents=[common], help='List available vulnerable applications')
    search = commands.add_parser('search', parents=[common], help='Search apps by name, description or tag')
    search.add_argument('term')
    for name, help_text in (('install', 'Build or pull an application image'),
                            ('run', 'Start an application behind the reverse proxy'),
                            ('stop', 'Stop a running application'),
                            ('rebuild', 'Rebuild a dockerfile or git application')):
        sub = commands.add_parser(name, parents=[common], help=help_text)
        sub.add_argument('app')
    remove = commands.add_parser('remove', parents=[common], help='Stop and remove an application')
    remove.add_argument('app')
    remove.add_argument('--purge', action='store_true', help='Also remove the image and build workspace')
    commands.add_parser('status', parents=[common], help='Show status of installed applications')

    manifest = commands.add_parser('manifest', parents=[common], help='Inspect and manage trusted manifests')
    manifest_commands = manifest.add_subparsers(dest='manifest_command', metavar='ACTION')
    manifest_commands.required = True
    manifest_commands.add_parser('show', parents=[common], help='Show the manifest and whether it is accepted')
    manifest_commands.add_parser('accepted', parents=[common], help='List accepted manifests')
    forget = manifest_commands.add_parser('forget', parents=[common], help='Forget an accepted manifest')
    forget.add_argument('url', nargs='?')

    return parser


def setup_logging(verbose=False):
    level = os.environ.get('VULN_PKG_LOG_LEVEL', 'DEBUG' if verbose else 'WARNING').upper()
    logging.basicConfig(
        level=level,
        format='%(message)s',
        datefmt='[%X]',
        handlers=[RichHandler(show_path=False, markup=False, rich_tracebacks=verbose)],
    )


def settings_from_args(args):
    return Settings(
        manifest_url=getattr(args, 'manifest_url', DEFAULT_MANIFEST_URL),
        resolve_address=getattr(args, 'resolve_address', '127.0.0.1'),
        domain=getattr(args, 'domain', None),
        https=getattr(args, 'https', False),
        auto_accept=getattr(args, 'yes', False),
        json_output=getattr(args, 'json', False),
    )


def dispatch(args, ctx, comps):
    from cli import commands

    if args.command == 'list':
        commands.cmd_list(ctx, comps)
    elif args.command == 'search':
        commands.cmd_search(ctx, comps, args.term)
    elif args.command == 'install':
        commands.cmd_install(ctx, comps, args.app)
    elif args.command == 'run':
        commands.cmd_run(ctx, comps, args.app)
    elif args.command == 'stop':
        commands.cmd_stop(ctx, comps, args.app)
    elif args.command == 'remove':
        commands.cmd_remove(ctx, comps, args.app, purge=args.purge)
    elif args.command == 'rebuild':
        commands.cmd_rebuild(ctx, comps, args.app)
    elif args.command == 'status':
        commands.cmd_status(ctx, comps)
    elif args.command == 'manifest':
        if args.manifest_command == 'show':
            commands.cmd_manifest_show(ctx, comps)
        elif args.manifest_command == 'accepted':
            commands.cmd_manifest_accepted(ctx, comps)
        else:
            commands.cmd_manifest_forget(ctx, comps, args.url)


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(getattr(args, 'verbose', False))

    from cli import ui
    from cli.commands import build_components

    settings = settings_from_args(args)
    ui.set_json_mode(settings.json_output)

    try:
        ctx = Context.create(settings)
        comps = build_components(ctx)
        dispatch(args, ctx, comps)
    except VulnPkgError as e:
        ui.show_error(str(e))
        return 1
    except KeyboardInterrupt:
        ui.show_error("Interrupted")
        return 130
    except OSError as e:
        _log.debug("Unhandled OS error", exc_info=True)
        ui.show_error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
