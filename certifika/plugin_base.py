import logging
import typing

logger = logging.getLogger(__name__)


class PluginRegistry:
    """Named implementations of an extension point.

    Each abstract base, e.g. :class:`~certifika.client.challenge_provisioner.ChallengeProvisioner`
    or :class:`~certifika.storage.CertificateStore`, owns one registry. Implementations register
    under the *type* string that selects them in a config file::

        @PluginRegistry.register_plugin("webroot")
        class WebrootProvisioner(ChallengeProvisioner):
            ...

        PluginRegistry.get_registry(ChallengeProvisioner).get_plugin("webroot")
    """

    _registry_map: typing.Dict[type, "PluginRegistry"] = dict()

    def __init__(self):
        self._subclasses: typing.Dict[str, type] = dict()

    @classmethod
    def get_registry(cls, plugin_parent_cls: type) -> "PluginRegistry":
        """Returns the registry owned by *plugin_parent_cls*, creating an empty one on first use."""
        return cls._registry_map.setdefault(plugin_parent_cls, PluginRegistry())

    @classmethod
    def _registry_for(cls, plugin_cls: type) -> "PluginRegistry":
        # Closest ancestor that owns a registry, the direct base otherwise.
        for base in plugin_cls.__mro__[1:]:
            if base in cls._registry_map:
                return cls._registry_map[base]
        return cls.get_registry(plugin_cls.__mro__[1])

    @classmethod
    def register_plugin(cls, config_name: str):
        """Class decorator adding the class to its base's registry as *config_name*."""

        def deco(plugin_cls):
            cls._registry_for(plugin_cls)._subclasses[config_name] = plugin_cls
            logger.debug("Registered %s as %s", plugin_cls.__name__, config_name)
            return plugin_cls

        return deco

    def config_mapping(self) -> typing.Dict[str, type]:
        return self._subclasses

    def get_plugin(self, config_name: str) -> type:
        """Looks up the implementation registered as *config_name*.

        :raises: :class:`ValueError` If nothing is registered under that name.
        """
        try:
            return self._subclasses[config_name]
        except KeyError:
            raise ValueError(
                f"Unknown plugin {config_name!r}. Valid options: {', '.join(self._subclasses)}"
            ) from None
