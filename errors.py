"""Exception hierarchy shared by registries, the resolver and watchers."""


class TagWatchError(Exception):
    """Base class for all tagwatch errors."""


class ConfigurationError(TagWatchError):
    """Invalid registry, watcher or global configuration."""


class AuthenticationError(TagWatchError):
    """Token or credential exchange with a registry failed."""


class RegistryUnavailableError(TagWatchError):
    """Network error, timeout or unexpected status from a registry."""


class UnsupportedRegistryError(TagWatchError):
    """No registry provider handles the image's registry URL."""


class ContainerRuntimeError(TagWatchError):
    """The container runtime could not be queried."""
