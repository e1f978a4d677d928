# vuln-pkg v0.3 - Input validation
import os
import re

APP_NAME_RE = re.compile(r'^[a-z0-9-]+$')
ENV_KEY_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def validate_app_name(name):
    '''Validate an application name. Returns the name or raises ValueError.
    Names end up in container names, image tags and hostnames, so only
    lowercase letters, digits and dashes are allowed.
    '''
    if not name or not isinstance(name, str):
        raise ValueError("name is required")
    if not APP_NAME_RE.match(name):
        raise ValueError(f"'{name}' must contain only lowercase letters, digits and '-'")
    return name


def validate_port(port):
    '''Validate port number. Returns int or raises ValueError.'''
    if isinstance(port, bool):
        raise ValueError("Port must be a number")
    try:
        port = int(port)
    except (ValueError, TypeError):
        raise ValueError("Port must be a number")

    if not (1 <= port <= 65535):
        raise ValueError("Port must be between 1 and 65535")

    return port


def validate_env_entry(entry):
    '''Validate a KEY=VALUE environment entry. Returns it or raises ValueError.'''
    if not isinstance(entry, str) or '=' not in entry:
        raise ValueError(f"{entry!r} is not a KEY=VALUE string")
    key = entry.split('=', 1)[0]
    if not ENV_KEY_RE.match(key):
        raise ValueError(f"invalid variable name {key!r}")
    return entry


def resolve_within(base, relative):
    '''Join a relative path onto base, refusing anything that escapes it.'''
    base = os.path.realpath(base)
    target = os.path.realpath(os.path.join(base, relative))
    if target != base and not target.startswith(base + os.sep):
        raise ValueError(f"path {relative!r} escapes {base}")
    return target
