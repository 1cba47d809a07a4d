"""Built-in device matrices and device selection helpers."""

import re
from typing import Dict, Iterable, List, Optional, Union

from ..exceptions import ValidationError
from .models import DeviceSpec, DeviceTier, FormFactor, Platform


def _ios(name: str, os_version: str, form_factor: FormFactor = FormFactor.PHONE) -> DeviceSpec:
    return DeviceSpec(platform=Platform.IOS, name=name, os_version=os_version, form_factor=form_factor)


def _android(name: str, os_version: str, form_factor: FormFactor = FormFactor.PHONE) -> DeviceSpec:
    return DeviceSpec(platform=Platform.ANDROID, name=name, os_version=os_version, form_factor=form_factor)


DEVICE_MATRICES: Dict[DeviceTier, List[DeviceSpec]] = {
    # Quick smoke tests
    DeviceTier.MINIMAL: [
        _ios("iPhone 15", "17.0"),
        _android("Pixel 7", "14"),
    ],
    # Major form factors on current OS versions
    DeviceTier.STANDARD: [
        _ios("iPhone 15", "17.0"),
        _ios("iPhone SE (3rd generation)", "17.0"),
        _ios("iPad Pro 12.9-inch", "17.0", FormFactor.TABLET),
        _android("Pixel 7", "14"),
        _android("Samsung Galaxy S23", "14"),
        _android("Samsung Galaxy Tab S9", "14", FormFactor.TABLET),
    ],
    # Full compatibility pass, including previous OS versions
    DeviceTier.COMPREHENSIVE: [
        _ios("iPhone 15 Pro Max", "17.0"),
        _ios("iPhone 15", "17.0"),
        _ios("iPhone SE (3rd generation)", "17.0"),
        _ios("iPad Pro 12.9-inch", "17.0", FormFactor.TABLET),
        _ios("iPhone 14", "16.0"),
        _ios("iPhone 12", "15.0"),
        _android("Pixel 8", "14"),
        _android("Pixel 7", "14"),
        _android("Samsung Galaxy S23 Ultra", "14"),
        _android("Samsung Galaxy A54", "14"),
        _android("Samsung Galaxy Tab S9", "14", FormFactor.TABLET),
        _android("Pixel 6", "13"),
        _android("Samsung Galaxy S22", "13"),
    ],
}


def get_recommended_devices(
    tier: Union[DeviceTier, str] = DeviceTier.MINIMAL,
    platforms: Optional[Iterable[Union[Platform, str]]] = None,
) -> List[DeviceSpec]:
    """Return the built-in matrix for ``tier``, optionally restricted to ``platforms``.

    Raises:
        ValidationError: If the tier or a platform is unknown
    """
    try:
        tier = DeviceTier(tier)
        wanted = None if platforms is None else {Platform(p) for p in platforms}
    except ValueError as e:
        raise ValidationError(str(e)) from e

    devices = DEVICE_MATRICES[tier]
    if wanted is not None:
        devices = [device for device in devices if device.platform in wanted]
    return list(devices)


def platforms_in(devices: Iterable[DeviceSpec]) -> List[Platform]:
    """Platforms present in ``devices``, iOS first."""
    present = {device.platform for device in devices}
    return [platform for platform in (Platform.IOS, Platform.ANDROID) if platform in present]


def app_path_for_platform(app_path: str, platform: Union[Platform, str]) -> str:
    """Locator of the platform-specific build of an app.

    Builds are exported side by side (``app.apk``/``app.aab`` and ``app.ipa``),
    so the iOS variant is found by swapping the extension and vice versa.
    """
    if Platform(platform) == Platform.IOS:
        return re.sub(r"\.(apk|aab)$", ".ipa", app_path)
    return re.sub(r"\.ipa$", ".apk", app_path)


def guess_form_factor(device_name: str) -> FormFactor:
    """Classify a vendor device name as phone or tablet."""
    if re.search(r"\b(iPad|Tab|Tablet)\b", device_name, re.IGNORECASE):
        return FormFactor.TABLET
    return FormFactor.PHONE
