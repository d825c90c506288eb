from collections.abc import Callable
import importlib
from typing import Protocol, runtime_checkable

from fleetrecall.schemas import EaInfo, PrimaryLookup


@runtime_checkable
class PrimarySource(Protocol):
    def initialize(self) -> bool: ...

    def lookup(self, vin: str) -> PrimaryLookup: ...

    def close(self) -> None: ...


@runtime_checkable
class RegistrySource(Protocol):
    def initialize(self) -> bool: ...

    def check_authenticated(self) -> bool: ...

    def authenticate(self) -> bool: ...

    def resolve(self, recall_number: str) -> EaInfo: ...

    def close(self) -> None: ...


def load_factory(path: str) -> Callable[[], object]:
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"source factory must look like 'package.module:callable', got '{path}'")

    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"'{attr}' not found in module '{module_name}'") from None
    if not callable(factory):
        raise ValueError(f"source factory '{path}' is not callable")
    return factory


def build_primary_source(path: str) -> PrimarySource:
    source = load_factory(path)()
    if not isinstance(source, PrimarySource):
        raise TypeError(f"'{path}' did not build a PrimarySource")
    return source


def build_registry_source(path: str) -> RegistrySource:
    source = load_factory(path)()
    if not isinstance(source, RegistrySource):
        raise TypeError(f"'{path}' did not build a RegistrySource")
    return source
