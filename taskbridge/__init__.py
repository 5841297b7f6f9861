"""TaskBridge - keep markdown vault tasks in sync with CalDAV task lists."""

from taskbridge.version import get_version

__version__ = get_version()
