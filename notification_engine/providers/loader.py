import importlib
from functools import lru_cache
from typing import Type, TypeVar

from notification_engine.config.settings import settings
from notification_engine.providers.channel_transport import ChannelTransport
from notification_engine.providers.entity_store import EntityStore
from notification_engine.utils.errors import ConfigurationError
from notification_engine.utils.logging import get_logger

logger = get_logger()

T = TypeVar("T")


def load_class(class_path: str, expected: Type[T], setting_name: str) -> Type[T]:
    """Resolve "package.module:ClassName" and check it implements ``expected``."""
    if not class_path:
        raise ConfigurationError(f"{setting_name} is not configured")

    module_path, _, class_name = class_path.partition(":")
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigurationError(
            f"{setting_name}: cannot import module {module_path!r} ({e})"
        ) from e

    cls = getattr(module, class_name, None)
    if cls is None:
        raise ConfigurationError(
            f"{setting_name}: {module_path!r} has no attribute {class_name!r}"
        )
    if not isinstance(cls, type) or not issubclass(cls, expected):
        raise ConfigurationError(
            f"{setting_name}: {class_path!r} is not a {expected.__name__}"
        )
    return cls


@lru_cache(maxsize=1)
def get_entity_store() -> EntityStore:
    store_cls = load_class(
        settings.ENTITY_STORE_CLASS, EntityStore, "ENTITY_STORE_CLASS"
    )
    logger.info("Entity store loaded", entity_store=settings.ENTITY_STORE_CLASS)
    return store_cls()


@lru_cache(maxsize=1)
def get_channel_transport() -> ChannelTransport:
    transport_cls = load_class(
        settings.CHANNEL_TRANSPORT_CLASS, ChannelTransport, "CHANNEL_TRANSPORT_CLASS"
    )
    logger.info(
        "Channel transport loaded", channel_transport=settings.CHANNEL_TRANSPORT_CLASS
    )
    return transport_cls()


def validate_runtime_configuration() -> None:
    """Resolve every configured collaborator once; raises ConfigurationError."""
    get_entity_store()
    get_channel_transport()
