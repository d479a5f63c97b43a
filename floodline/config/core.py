"""
Main configuration management module.
"""

from typing_extensions import Self
import attrs
import orjson
import typing
import logging
from datetime import datetime

from floodline.types import (
    converter,
    GlobalConfig,
    MatchingConfig,
    GradientConfig,
    SamplingConfig,
    AnimationConfig,
    RenderConfig,
    TopologyConfig,
)
from floodline.storages import StorageBackend

logger = logging.getLogger(__name__)

__all__ = ["Configuration", "ConfigurationState"]

ConfigObserver = typing.Callable[["ConfigurationState"], typing.Any]


def _flatten(obj, parent_key: str = "", sep: str = "."):
    """Recursively flatten a nested dictionary"""
    items = []
    if isinstance(obj, dict):
        for k, v in obj.items():
            new_key = f"{parent_key}{sep}{k}" if parent_key else k
            if isinstance(v, dict):
                items.extend(_flatten(v, new_key, sep=sep).items())
            else:
                items.append((new_key, v))
    else:
        items.append((parent_key, obj))
    return dict(items)


@attrs.define(slots=True, frozen=True)
class ConfigurationState:
    """Complete configuration state"""

    global_: GlobalConfig = attrs.field(factory=GlobalConfig)
    """Global application settings"""
    matching: MatchingConfig = attrs.field(factory=MatchingConfig)
    """Node-to-pipe matching settings"""
    gradient: GradientConfig = attrs.field(factory=GradientConfig)
    """Gradient segment settings"""
    sampling: SamplingConfig = attrs.field(factory=SamplingConfig)
    """Line sampling and density field settings"""
    animation: AnimationConfig = attrs.field(factory=AnimationConfig)
    """Pulse, wobble and fade-in settings"""
    render: RenderConfig = attrs.field(factory=RenderConfig)
    """Rendering engine source/layer names"""
    topology: TopologyConfig = attrs.field(factory=TopologyConfig)
    """Network topology locations"""
    last_updated: str = attrs.field(factory=lambda: datetime.now().isoformat())
    """Timestamp of the last update"""
    version: str = "1.0"
    """Configuration schema version"""

    def flatten(self) -> typing.Dict[str, typing.Any]:
        """Get all configurations as a flat dictionary with dot notation keys"""
        data = converter.unstructure(self)
        return _flatten(data)

    def get(self, path: str, /) -> typing.Any:
        """Get nested configuration using dot notation (e.g., 'sampling.base_density')"""
        obj = self
        for part in path.split("."):
            if not attrs.has(type(obj)) or not hasattr(obj, part):
                raise ValueError(f"Invalid configuration path: {path}")
            obj = getattr(obj, part)
        return obj

    def update(self, path: str, /, **kwargs: typing.Any) -> Self:
        """
        Update nested configuration using dot notation (e.g., 'animation')

        Returns a new `ConfigurationState` instance with the updated values.
        """
        now = datetime.now().isoformat()
        if path == ".":
            return attrs.evolve(self, **kwargs, last_updated=now)

        parts = path.split(".")
        target = self.get(path)
        if not attrs.has(type(target)):
            raise ValueError(f"Configuration path {path!r} is not a section")

        new_obj = attrs.evolve(target, **kwargs)
        # Rebuild every parent of the updated section, innermost first
        for index in range(len(parts) - 1, 0, -1):
            parent = self.get(".".join(parts[:index]))
            new_obj = attrs.evolve(parent, **{parts[index]: new_obj})
        return attrs.evolve(self, **{parts[0]: new_obj}, last_updated=now)


class Configuration:
    """Application configuration with optional persistence via storage backends."""

    def __init__(
        self,
        id: str,
        storages: typing.Optional[typing.List[StorageBackend]] = None,
        save_throttle: float = 5.0,
    ) -> None:
        """
        Initialize configuration.

        :param id: Unique identifier for the configuration (e.g., deployment or session id)
        :param storages: List of storage backends to use. If multiple storages are provided,
            they are tried in order when loading and all written to when saving.
        :param save_throttle: Minimum seconds between automatic saves (default: 5.0s)
        """
        self.id = id
        self.storages = storages or []
        self._state = ConfigurationState()
        self._observers: typing.List[ConfigObserver] = []
        self.save_throttle = save_throttle
        self._last_saved_at = 0.0
        self.load()
        logger.debug(f"Configuration initialized with ID: {self.id}")

    @property
    def state(self) -> ConfigurationState:
        """Get current configuration state"""
        return self._state

    def observe(self, observer: ConfigObserver) -> ConfigObserver:
        """Add configuration change observer"""
        if observer not in self._observers:
            self._observers.append(observer)
        return observer

    def unobserve(self, observer: ConfigObserver) -> ConfigObserver:
        """Remove configuration change observer"""
        if observer in self._observers:
            self._observers.remove(observer)
        return observer

    def notify(self) -> None:
        """Notify all observers of configuration changes"""
        for observer in list(self._observers):
            try:
                observer(self._state)
            except Exception as exc:
                logger.error(f"Error notifying config observer: {exc}", exc_info=True)

    def get(self, path: str, /) -> typing.Any:
        """Get nested configuration using dot notation (e.g., 'render.line_source')"""
        return self._state.get(path)

    def update(self, path: str, /, **kwargs: typing.Any) -> None:
        """Update nested configuration using dot notation (e.g., 'matching')"""
        self._state = self._state.update(path, **kwargs)
        if self._state.global_.auto_save:
            now = datetime.now().timestamp()
            if now - self._last_saved_at >= self.save_throttle:
                self._last_saved_at = now
                self.save()
        self.notify()

    def load(self, storage: typing.Optional[StorageBackend] = None) -> bool:
        """
        Load configuration from storages

        Tries each storage backend in order until a valid configuration is found.

        :return: Whether a stored configuration was loaded.
        """
        storages = [storage] if storage else self.storages
        for backend in storages:
            key = backend.get_key(self.id)
            data = backend.read(key)
            if not data:
                continue
            try:
                self._state = converter.structure(data, ConfigurationState)
                logger.debug(
                    f"Loaded configuration from storage: {type(backend).__name__}"
                )
                return True
            except Exception as exc:
                logger.error(
                    f"Failed to load configuration from storage: {exc}",
                    exc_info=True,
                )
        logger.info("No existing configuration found; using defaults")
        return False

    def save(self) -> None:
        """Save current configuration to all storages"""
        data = converter.unstructure(self._state)
        for storage in self.storages:
            key = storage.get_key(self.id)
            try:
                storage.write(key, data)
                logger.debug(
                    f"Saved configuration to storage: {type(storage).__name__}"
                )
            except Exception as exc:
                logger.error(
                    f"Failed to save configuration to storage: {exc}", exc_info=True
                )

    def reset(self) -> None:
        """Reset configuration to defaults"""
        self._state = ConfigurationState()
        self.save()
        self.notify()
        logger.info("Configuration reset to defaults")

    def export(self) -> str:
        """Export configuration as JSON string"""
        data = converter.unstructure(self._state)
        return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()

    def import_(self, json_str: typing.Union[str, bytes]) -> None:
        """Import configuration from a JSON string"""
        data = orjson.loads(json_str)
        self._state = converter.structure(data, ConfigurationState)
        self.save()
        self.notify()
