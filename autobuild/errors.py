"""Exception hierarchy for autobuild.

Sync and discovery errors are recoverable at the scope where they are
raised: a ``SyncError`` skips one repository cycle, a ``DiscoveryError``
skips one commit. Only ``ConfigError`` is fatal, and only at startup.
"""

import re

_URL_USERINFO = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")


def redact_url(text: str) -> str:
    """Strip ``user:password@`` from any URL found in ``text``."""
    return _URL_USERINFO.sub(r"\g<scheme>***@", text)


class AutoBuildError(Exception):
    """Base exception for autobuild errors."""
    pass


class ConfigError(AutoBuildError):
    """Configuration could not be loaded or failed validation."""
    pass


class SyncError(AutoBuildError):
    """A repository could not be cloned, opened or fetched."""

    def __init__(self, repo: str, message: str):
        self.repo = repo
        self.message = redact_url(message)
        super().__init__(f"{repo}: {self.message}")


class CloneFailed(SyncError):
    """Initial clone failed (transport or authentication)."""
    pass


class FetchFailed(SyncError):
    """Fetching remote updates failed; the previous state is kept."""
    pass


class CorruptCheckout(SyncError):
    """The checkout path exists but is not a trusted checkout of the repository."""
    pass


class DiscoveryError(AutoBuildError):
    """Listing the buildable outputs of one commit failed."""

    def __init__(self, commit: str, message: str):
        self.commit = commit
        self.message = redact_url(message)
        super().__init__(f"{commit}: {self.message}")


class ToolFailed(DiscoveryError):
    """The introspection command exited non-zero or could not be started."""
    pass


class ParseFailed(DiscoveryError):
    """The introspection command printed something that is not a JSON object."""
    pass
