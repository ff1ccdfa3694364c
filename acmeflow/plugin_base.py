import importlib
import logging
import pkgutil
import typing

logger = logging.getLogger(__name__)


class PluginRegistry:
    """Central place to register and look up plugins by the name they are given in config files.

    Each plugin base class, e.g. :class:`~acmeflow.client.ChallengeSolver`, owns one registry that maps
    names to the subclasses registered under it.
    """

    _registry_map: typing.Dict[type, "PluginRegistry"] = dict()

    def __init__(self):
        self._subclasses: typing.Dict[str, type] = dict()

    @classmethod
    def load_plugins(cls, path: str = "plugins") -> typing.List[str]:
        """Imports all modules of the given subpackage so that their plugins register themselves.

        Modules that fail to import, e.g. because an optional dependency is missing, are skipped.

        :param path: The subpackage of :mod:`acmeflow` to load plugins from.
        :return: The names of the modules that were loaded.
        """
        package_name = f"acmeflow.{path}"
        package = importlib.import_module(package_name)

        loaded = []
        for module_info in pkgutil.iter_modules(package.__path__):
            module_name = f"{package_name}.{module_info.name}"
            logger.debug("Loading %s", module_name)
            try:
                importlib.import_module(module_name)
            except ImportError as e:
                logger.info("Could not load plugin module %s: %s", module_name, e)
            else:
                loaded.append(module_name)

        return loaded

    @classmethod
    def get_registry(cls, plugin_parent_cls: type) -> "PluginRegistry":
        """Gets the plugin registry for the given parent class, creating it on first use."""
        return cls._registry_map.setdefault(plugin_parent_cls, PluginRegistry())

    @classmethod
    def register_plugin(cls, config_name: str):
        """Decorator that registers a class as a plugin under the given name.

        The class is added to the registry of the first registered base class it derives from,
        or to a new registry for its direct parent.

        :param config_name: The plugin's name in config files.
        """

        def deco(plugin_cls):
            parent = next(
                (base for base in cls._registry_map if issubclass(plugin_cls, base)),
                plugin_cls.__mro__[1],
            )
            cls.get_registry(parent)._subclasses[config_name] = plugin_cls
            return plugin_cls

        return deco

    def config_mapping(self) -> typing.Dict[str, type]:
        """Maps plugin config names to the registered classes."""
        return self._subclasses

    def get_plugin(self, config_name: str) -> type:
        """Queries the registry for a plugin by config name.

        :raises: :class:`ValueError` If no plugin is registered by the given name.
        """
        try:
            return self._subclasses[config_name]
        except KeyError:
            raise ValueError(
                f"The plugin {config_name} has not been registered. Valid options: "
                f"{', '.join(sorted(self._subclasses))}."
            ) from None
