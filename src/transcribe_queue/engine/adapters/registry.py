"""Adapter registry and explicit bootstrap of the built-in adapters."""

from __future__ import annotations

import threading
from collections.abc import Callable

from transcribe_queue.config import Settings
from transcribe_queue.engine.adapters.base import AdapterDescriptor
from transcribe_queue.engine.adapters.command_template import command_template_adapter
from transcribe_queue.engine.adapters.echo_adapter import echo_adapter
from transcribe_queue.engine.adapters.parakeet import parakeet_adapter
from transcribe_queue.engine.adapters.whisperx import whisperx_adapter
from transcribe_queue.engine.errors import AdapterNotFoundError, DuplicateAdapterError

BUILTIN_ADAPTERS: tuple[Callable[[Settings], AdapterDescriptor], ...] = (
    whisperx_adapter,
    parakeet_adapter,
    echo_adapter,
)


class AdapterRegistry:
    """Name-keyed catalog of adapter descriptors.

    Populated once at bootstrap and sealed afterwards, so lookups from worker
    threads never observe a partially built catalog.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, AdapterDescriptor] = {}
        self._sealed = False
        self._lock = threading.Lock()

    def register(self, descriptor: AdapterDescriptor) -> None:
        with self._lock:
            if self._sealed:
                raise RuntimeError("Adapter registry is sealed.")
            if descriptor.name in self._adapters:
                raise DuplicateAdapterError(descriptor.name)
            self._adapters[descriptor.name] = descriptor

    def lookup(self, name: str) -> AdapterDescriptor:
        try:
            return self._adapters[name]
        except KeyError:
            raise AdapterNotFoundError(name) from None

    def list(self) -> list[AdapterDescriptor]:
        return [self._adapters[name] for name in sorted(self._adapters)]

    def seal(self) -> None:
        with self._lock:
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)


def register_all(registry: AdapterRegistry, settings: Settings) -> AdapterRegistry:
    """Register built-in and configured adapters, then seal the registry."""

    for constructor in BUILTIN_ADAPTERS:
        registry.register(constructor(settings))
    for name, template in settings.adapters.custom_adapters.items():
        registry.register(
            command_template_adapter(
                name=name,
                template=template,
                device=settings.environment.default_device,
            ),
        )
    registry.seal()
    return registry
