"""Provider registry: the one place that knows which vendor adapter to use."""

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Union

from ...exceptions import ProviderNotConfiguredError, ValidationError
from ..models import Provider
from .base import ProviderAdapter
from .browserstack import BrowserStackProvider
from .local import LocalDeviceProvider
from .unimplemented import (
    AWSDeviceFarmProvider,
    FirebaseTestLabProvider,
    LambdaTestProvider,
    MaestroCloudProvider,
    SauceLabsProvider,
)

if TYPE_CHECKING:
    from ...config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds the configured adapters.

    The local adapter is always registered. Unless a default is given
    explicitly, the first non-local adapter registered becomes the default;
    with none registered the default is ``local``.
    """

    def __init__(
        self,
        adapters: Iterable[ProviderAdapter] = (),
        default_provider: Optional[Union[Provider, str]] = None,
    ):
        self._adapters: Dict[Provider, ProviderAdapter] = {Provider.LOCAL: LocalDeviceProvider()}
        self._explicit_default: Optional[Provider] = None
        self._default = Provider.LOCAL

        for adapter in adapters:
            self.register(adapter)
        if default_provider is not None:
            self.set_default(default_provider)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ProviderRegistry":
        """Build adapters for every provider that has credentials configured."""
        adapters: List[ProviderAdapter] = []
        if settings.browserstack_username and settings.browserstack_access_key:
            adapters.append(
                BrowserStackProvider(
                    settings.browserstack_username,
                    settings.browserstack_access_key,
                    project=settings.browserstack_project,
                )
            )
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            adapters.append(
                AWSDeviceFarmProvider(
                    settings.aws_access_key_id,
                    settings.aws_secret_access_key,
                    region=settings.aws_region,
                    project_arn=settings.aws_device_farm_project_arn,
                )
            )
        if settings.firebase_project_id and settings.firebase_service_account_key:
            adapters.append(
                FirebaseTestLabProvider(settings.firebase_project_id, settings.firebase_service_account_key)
            )
        if settings.maestro_cloud_api_key:
            adapters.append(MaestroCloudProvider(settings.maestro_cloud_api_key))
        if settings.sauce_username and settings.sauce_access_key:
            adapters.append(
                SauceLabsProvider(settings.sauce_username, settings.sauce_access_key, region=settings.sauce_region)
            )
        if settings.lambdatest_username and settings.lambdatest_access_key:
            adapters.append(LambdaTestProvider(settings.lambdatest_username, settings.lambdatest_access_key))

        registry = cls(adapters)
        preferred = settings.device_cloud_default_provider
        if preferred:
            if preferred in registry:
                registry.set_default(preferred)
            else:
                logger.warning(
                    f"[DeviceCloud] Default provider {preferred} is not configured, "
                    f"using {registry.default_provider.value}"
                )
        return registry

    def register(self, adapter: ProviderAdapter) -> None:
        """Add (or replace) the adapter for ``adapter.name``."""
        self._adapters[adapter.name] = adapter
        if (
            self._explicit_default is None
            and self._default == Provider.LOCAL
            and adapter.name != Provider.LOCAL
        ):
            self._default = adapter.name
        logger.info(f"[DeviceCloud] Registered provider: {adapter.name.value}")

    def set_default(self, provider: Union[Provider, str]) -> None:
        """Make ``provider`` the default.

        Raises:
            ValidationError: If the name is not a known provider
            ProviderNotConfiguredError: If the provider is not registered
        """
        name = self._resolve_name(provider)
        if name not in self._adapters:
            raise ProviderNotConfiguredError(name.value)
        self._explicit_default = name
        self._default = name

    @property
    def default_provider(self) -> Provider:
        return self._default

    def get(self, provider: Optional[Union[Provider, str]] = None) -> ProviderAdapter:
        """Adapter for ``provider`` (the default one if None).

        Raises:
            ProviderNotConfiguredError: If the provider is unknown or not registered
        """
        if provider is None:
            return self._adapters[self._default]
        try:
            name = Provider(provider)
        except ValueError:
            raise ProviderNotConfiguredError(str(provider))
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ProviderNotConfiguredError(name.value)
        return adapter

    def names(self) -> List[Provider]:
        return list(self._adapters)

    def __contains__(self, provider: object) -> bool:
        try:
            return Provider(provider) in self._adapters
        except ValueError:
            return False

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()

    @staticmethod
    def _resolve_name(provider: Union[Provider, str]) -> Provider:
        try:
            return Provider(provider)
        except ValueError:
            raise ValidationError(f"Unknown device cloud provider: {provider}")
