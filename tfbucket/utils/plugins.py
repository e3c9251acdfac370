import logging
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Generic, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Provider(Generic[T]):
    name: str
    model_class: Type[T]


def get_providers(provider_type: Type[T], entrypoint_group: str) -> dict[str, Provider[T]]:
    """Load every class registered to `entrypoint_group`, keyed by entrypoint name.

    Classes that don't implement `provider_type` are skipped with a warning.
    """
    raw_providers = entry_points(group=entrypoint_group)

    providers_classes = {provider.name: provider.load() for provider in raw_providers}
    all_providers: dict[str, Provider[T]] = {}

    for provider_name, provider_class in providers_classes.items():
        # check that provider_class is subclass of provider
        if not isinstance(provider_class, type) or not issubclass(provider_class, provider_type):
            logger.warning("Provider %s is not a subclass of %s", provider_name, provider_type)
            continue

        all_providers[provider_name] = Provider(provider_name, provider_class)

    return all_providers
