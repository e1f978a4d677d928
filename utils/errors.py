# vuln-pkg v0.3 - Error taxonomy


class VulnPkgError(Exception):
    '''Base class for every error surfaced to the user'''

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class ManifestFetchError(VulnPkgError):
    '''Network, timeout or not-found while fetching a manifest'''

    def __init__(self, url, reason):
        super().__init__(f"Failed to fetch manifest from {url}: {reason}")
        self.url = url
        self.reason = reason


class ManifestParseError(VulnPkgError):
    def __init__(self, reason):
        super().__init__(f"Failed to parse manifest: {reason}")
        self.reason = reason


class ManifestValidationError(VulnPkgError):
    '''A single app entry violates the manifest schema'''

    def __init__(self, app_name, field, reason):
        super().__init__(f"Manifest validation error: app '{app_name}', field '{field}': {reason}")
        self.app_name = app_name
        self.field = field
        self.reason = reason


class TrustRejected(VulnPkgError):
    def __init__(self, url):
        super().__init__(f"Manifest from {url} was rejected")
        self.url = url


class DaemonUnavailable(VulnPkgError):
    pass


class ImageBuildError(VulnPkgError):
    '''Image build failed; keeps the failing step and a log excerpt'''

    def __init__(self, image, step, log_excerpt=''):
        message = f"Failed to build image '{image}' at step: {step}"
        if log_excerpt:
            message += f"\n{log_excerpt}"
        super().__init__(message)
        self.image = image
        self.step = step
        self.log_excerpt = log_excerpt


class GitError(VulnPkgError):
    def __init__(self, repo, reason):
        super().__init__(f"Git error for '{repo}': {reason}")
        self.repo = repo
        self.reason = reason


class AppNotFound(VulnPkgError):
    def __init__(self, name):
        super().__init__(f"Application '{name}' not found in manifest")
        self.name = name


class InvalidOperation(VulnPkgError):
    pass


class AppNotInstalled(InvalidOperation):
    def __init__(self, name):
        super().__init__(f"Application '{name}' is not installed")
        self.name = name


class StateCorrupted(VulnPkgError):
    '''Raised internally when state.json cannot be read; load() recovers from it'''

    def __init__(self, path, reason):
        super().__init__(f"State file {path} is unreadable: {reason}")
        self.path = path
        self.reason = reason


class DockerError(VulnPkgError):
    '''A docker command failed for a reason other than an unreachable daemon'''

    def __init__(self, action, reason):
        super().__init__(f"Docker {action} failed: {reason}")
        self.action = action
        self.reason = reason
