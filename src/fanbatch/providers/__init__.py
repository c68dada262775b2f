from __future__ import annotations

import importlib
import inspect
from pathlib import Path

from fanbatch.config import ProviderSettings
from fanbatch.exceptions import UnknownProviderError
from fanbatch.providers.base import BaseProvider, PollSnapshot, ProviderRequestSpec

__all__ = [
    "BaseProvider",
    "PROVIDER_CLASSES",
    "PollSnapshot",
    "ProviderRequestSpec",
    "build_providers",
    "get_provider",
]


def _discover_provider_module_names() -> list[str]:
    """
    Discover provider module names from files in this package.

    Returns
    -------
    list[str]
        Sorted module names excluding package and base modules.
    """
    package_dir = Path(__file__).resolve().parent
    module_names = [
        file_path.stem
        for file_path in package_dir.glob("*.py")
        if file_path.name not in {"__init__.py", "base.py"}
    ]
    return sorted(module_names)


def _discover_provider_classes() -> dict[str, type[BaseProvider]]:
    """
    Discover provider adapter classes from provider modules.

    Returns
    -------
    dict[str, type[BaseProvider]]
        Concrete ``BaseProvider`` subclasses keyed by provider id.
    """
    provider_classes: dict[str, type[BaseProvider]] = {}
    for module_name in _discover_provider_module_names():
        module = importlib.import_module(name=f"{__name__}.{module_name}")
        for attr in vars(module).values():
            if not inspect.isclass(attr):
                continue
            if not issubclass(attr, BaseProvider) or attr is BaseProvider:
                continue
            if inspect.isabstract(attr):
                continue
            if attr.__module__ != module.__name__:
                continue
            provider_classes[attr.name] = attr
    return provider_classes


PROVIDER_CLASSES: dict[str, type[BaseProvider]] = _discover_provider_classes()


def build_providers(settings: ProviderSettings) -> dict[str, BaseProvider]:
    """
    Instantiate every known provider adapter with ``settings``.

    Parameters
    ----------
    settings : ProviderSettings
        Credentials and endpoints shared by the adapters.

    Returns
    -------
    dict[str, BaseProvider]
        Provider instances keyed by provider id, in deterministic order.
    """
    return {
        name: provider_cls(settings=settings) for name, provider_cls in PROVIDER_CLASSES.items()
    }


def get_provider(providers: dict[str, BaseProvider], provider_id: str) -> BaseProvider:
    """
    Resolve a provider adapter by id.

    Raises
    ------
    UnknownProviderError
        If no adapter is registered under ``provider_id``.
    """
    try:
        return providers[provider_id]
    except KeyError:
        raise UnknownProviderError(provider_id) from None
