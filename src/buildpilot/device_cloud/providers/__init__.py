"""Device cloud provider adapters."""

from .base import ProviderAdapter
from .browserstack import BrowserStackProvider
from .local import LocalDeviceProvider
from .registry import ProviderRegistry
from .unimplemented import (
    AWSDeviceFarmProvider,
    FirebaseTestLabProvider,
    LambdaTestProvider,
    MaestroCloudProvider,
    SauceLabsProvider,
    UnimplementedProvider,
)

__all__ = [
    "ProviderAdapter",
    "ProviderRegistry",
    "BrowserStackProvider",
    "LocalDeviceProvider",
    "UnimplementedProvider",
    "AWSDeviceFarmProvider",
    "FirebaseTestLabProvider",
    "MaestroCloudProvider",
    "SauceLabsProvider",
    "LambdaTestProvider",
]
