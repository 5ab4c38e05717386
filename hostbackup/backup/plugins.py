"""
Plugin discovery and invocation.

Plugins live in one directory per category under the plugin root:
- application: export data into the scratch workspace before encryption
- remote: copy the output root off-host
- post-backup: notify once the run has finished

Every regular file in a category directory is a plugin. Its identity is the
file name up to the first '.', and it must define ``<identity>_exec``, which
is called with the category's target path and a PluginContext:

    def rsync_exec(target, context):
        ...

A handler returning False counts as a recoverable failure. Raising
FatalError aborts the run; any other exception is recoverable.
"""

import importlib.machinery
import importlib.util
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from hostbackup.config import RunConfiguration
from .outcome import FatalError, RunOutcome
from .tools import ToolAvailability

log = logging.getLogger(__name__)

APPLICATION = 'application'
REMOTE = 'remote'
POST_BACKUP = 'post-backup'

CATEGORIES = (APPLICATION, REMOTE, POST_BACKUP)

ENTRY_SUFFIX = '_exec'


class PluginError(Exception):
    """Raised when a plugin cannot be loaded."""
    pass


@dataclass
class PluginContext:
    """Run state shared with plugin handlers."""

    config: RunConfiguration
    outcome: RunOutcome
    log_file: Path
    tools: ToolAvailability = field(default_factory=ToolAvailability)


@dataclass
class PluginEntry:
    """A discovered and loaded plugin."""

    category: str
    identity: str
    path: Path
    handler: Callable


def plugin_identity(path: Path) -> str:
    """Plugin identity: the file name up to the first '.'."""
    return path.name.split('.', 1)[0]


def load_plugin(category: str, path: Path) -> PluginEntry:
    """
    Load a plugin file and resolve its entry point.

    Args:
        category: Plugin category
        path: Plugin file

    Returns:
        PluginEntry with the resolved handler

    Raises:
        PluginError: If the file cannot be executed or lacks the entry point
        FatalError: If the plugin raises it while loading
    """
    identity = plugin_identity(path)
    module_name = f"hostbackup.plugins.{category.replace('-', '_')}.{identity}"

    # SourceFileLoader accepts any file name, not just *.py
    loader = importlib.machinery.SourceFileLoader(module_name, str(path))
    spec = importlib.util.spec_from_loader(module_name, loader)
    module = importlib.util.module_from_spec(spec)

    try:
        loader.exec_module(module)
    except FatalError:
        raise
    except Exception as e:
        raise PluginError(f"Could not load plugin {path}: {e}")

    entry_name = f"{identity}{ENTRY_SUFFIX}"
    handler = getattr(module, entry_name, None)
    if not callable(handler):
        raise PluginError(f"Plugin {path} does not define {entry_name}()")

    return PluginEntry(category=category, identity=identity, path=path, handler=handler)


class PluginRegistry:
    """Loaded plugins, keyed by category and identity."""

    def __init__(self):
        self._plugins: Dict[str, Dict[str, PluginEntry]] = {}

    def register(self, entry: PluginEntry):
        self._plugins.setdefault(entry.category, {})[entry.identity] = entry
        log.debug("Registered plugin: %s/%s", entry.category, entry.identity)

    def get(self, category: str, identity: str) -> PluginEntry:
        fam = self._plugins.get(category)
        if fam is None or identity not in fam:
            raise KeyError(f"Unknown plugin: {category}/{identity!r}")
        return fam[identity]

    def list_category(self, category: str) -> List[PluginEntry]:
        """Plugins in a category, in discovery order."""
        return list(self._plugins.get(category, {}).values())

    def categories(self) -> List[str]:
        return list(self._plugins.keys())


class PluginRunner:
    """
    Discovers plugins at startup and invokes them at their pipeline stage.
    """

    def __init__(self, plugin_dir: str, context: PluginContext, registry: Optional[PluginRegistry] = None):
        """
        Initialize plugin runner.

        Args:
            plugin_dir: Root directory holding one subdirectory per category
            context: Run state passed to every handler
            registry: Registry to populate (a fresh one by default)
        """
        self.plugin_dir = Path(plugin_dir)
        self.context = context
        self.registry = registry or PluginRegistry()
        self._discovered = set()

    def category_dir(self, category: str) -> Path:
        return self.plugin_dir / category

    def discover(self, category: str) -> List[PluginEntry]:
        """
        Load every plugin of a category into the registry.

        Files that fail to load are logged as errors and skipped.

        Args:
            category: Plugin category

        Returns:
            Loaded plugins in discovery order

        Raises:
            FatalError: If the category directory does not exist, or a plugin
                raises it while loading
        """
        directory = self.category_dir(category)
        if not directory.is_dir():
            raise FatalError(f"Cannot find {category} plugin dir: {directory}")

        self._discovered.add(category)
        for path in sorted(directory.iterdir()):
            if not path.is_file():
                continue
            try:
                self.registry.register(load_plugin(category, path))
            except PluginError as e:
                log.error("%s", e)

        return self.registry.list_category(category)

    def run(self, category: str, target) -> int:
        """
        Invoke every plugin of a category with the given target.

        Args:
            category: Plugin category
            target: Positional argument for the handlers (workspace path,
                output root or log path, depending on the category)

        Returns:
            Number of plugins invoked

        Raises:
            FatalError: If the category directory is missing, or a plugin
                raises FatalError
        """
        if category not in self._discovered:
            self.discover(category)

        plugins = self.registry.list_category(category)
        if not plugins:
            log.warning("No %s backup plugin found.", category)
            return 0

        for plugin in plugins:
            log.info("%s plugin found: %s", category.capitalize(), plugin.identity)
            self._invoke(plugin, target)

        return len(plugins)

    def _invoke(self, plugin: PluginEntry, target):
        try:
            result = plugin.handler(str(target), self.context)
        except FatalError:
            raise
        except Exception as e:
            log.error("Plugin %s failed: %s", plugin.identity, e)
            return

        if result is False:
            log.error("Plugin %s reported failure.", plugin.identity)
