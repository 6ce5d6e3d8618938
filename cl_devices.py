"""
Platform and device discovery.

Enumeration is two-level, as in OpenCL itself: platforms first, then the
devices of one platform filtered by type. ``discover`` resolves a
DeviceSelector to exactly one (platform, device) pair or raises
NoMatchingDeviceError. A selector without a platform index falls back to
scoring every platform/device combination and taking the best one.
"""

import logging

import pyopencl as cl

from cl_config import DeviceSelector, DEVICE_TYPES
from cl_errors import NoMatchingDeviceError, status_name, backend_status

logger = logging.getLogger(__name__)

DEVICE_TYPE_NAMES = {
    cl.device_type.CPU: 'CPU',
    cl.device_type.GPU: 'GPU',
    cl.device_type.ACCELERATOR: 'ACCELERATOR',
    cl.device_type.DEFAULT: 'DEFAULT',
}


def list_platforms():
    """Return every available platform; an empty list if no ICD is installed."""
    try:
        return list(cl.get_platforms())
    except cl.Error as e:
        logger.debug("Platform enumeration failed: %s", status_name(backend_status(e)))
        return []


def list_devices(platform, device_type='all'):
    """Return the devices of ``platform`` matching ``device_type`` (name or bitfield)."""
    if isinstance(device_type, str):
        device_type = DEVICE_TYPES[device_type.lower()]
    try:
        return list(platform.get_devices(device_type=device_type))
    except cl.Error as e:
        # DEVICE_NOT_FOUND is reported as an error rather than an empty list
        logger.debug("No devices of type %s on %s: %s",
                     device_type, platform.name, status_name(backend_status(e)))
        return []


def device_type_name(device):
    names = [name for bit, name in DEVICE_TYPE_NAMES.items() if device.type & bit]
    return '|'.join(names) or str(device.type)


def describe_device(device):
    """Query the attributes the samples report and validate against."""
    max_dims = device.max_work_item_dimensions
    return {
        'name': device.name.strip(),
        'vendor': device.vendor.strip(),
        'version': device.version.strip(),
        'driver_version': device.driver_version.strip(),
        'type': device_type_name(device),
        'extensions': device.extensions.split(),
        'max_compute_units': device.max_compute_units,
        'max_work_group_size': device.max_work_group_size,
        'max_work_item_dimensions': max_dims,
        'max_work_item_sizes': tuple(device.max_work_item_sizes[:max_dims]),
        'local_mem_size': device.local_mem_size,
        'global_mem_size': device.global_mem_size,
        'max_mem_alloc_size': device.max_mem_alloc_size,
        'image_support': bool(device.image_support),
        'mem_base_addr_align': device.mem_base_addr_align,
        'svm': supports_svm(device),
    }


def opencl_version(device):
    """(major, minor) from a version string such as 'OpenCL 3.0 PoCL ...'."""
    parts = device.version.split()
    try:
        major, minor = parts[1].split('.')[:2]
        return int(major), int(minor)
    except (IndexError, ValueError):
        return 0, 0


def svm_capabilities(device):
    """SVM capability bits of ``device``; 0 before OpenCL 2.0 or without SVM."""
    if opencl_version(device) < (2, 0) or cl.get_cl_header_version() < (2, 0):
        return 0
    try:
        return device.svm_capabilities
    except cl.Error as e:
        logger.debug("SVM capabilities unavailable on %s: %s",
                     device.name, status_name(backend_status(e)))
        return 0


def supports_svm(device):
    """True when the device offers at least coarse-grained SVM buffers."""
    return bool(svm_capabilities(device) & cl.device_svm_capabilities.COARSE_GRAIN_BUFFER)


def score_device(platform, device):
    """Score a platform/device combination; higher is preferred."""
    score = 0
    platform_name = platform.name.lower()

    # Vendor runtimes first, portable CPU implementations last
    if 'nvidia' in platform_name or 'cuda' in platform_name:
        score += 100
    elif 'amd' in platform_name or 'rocm' in platform_name:
        score += 90
    elif 'intel' in platform_name:
        score += 80
    elif 'rusticl' in platform_name or 'mesa' in platform_name:
        score += 70
    elif 'pocl' in platform_name or 'portable' in platform_name:
        score += 60

    if device.type & cl.device_type.GPU:
        score += 50
    elif device.type & cl.device_type.ACCELERATOR:
        score += 40

    score += min(device.max_compute_units, 50)
    return score


def best_device(device_type='all'):
    """Return the highest scoring (platform, device) pair, or raise."""
    best = None
    best_score = -1
    for platform in list_platforms():
        for device in list_devices(platform, device_type):
            score = score_device(platform, device)
            logger.debug("Candidate %s / %s scored %d", platform.name, device.name, score)
            if score > best_score:
                best, best_score = (platform, device), score

    if best is None:
        raise NoMatchingDeviceError(f"No OpenCL device of type '{device_type}' on any platform")
    return best


def discover(selector=None):
    """Resolve ``selector`` to a (platform, device) pair.

    Raises NoMatchingDeviceError when there are no platforms, an index is out
    of range, or the type filter leaves nothing to choose from.
    """
    selector = selector or DeviceSelector()

    if selector.platform_index is None:
        platform, device = best_device(selector.device_type)
        logger.debug("Auto-selected %s / %s", platform.name, device.name)
        return platform, device

    platforms = list_platforms()
    if not platforms:
        raise NoMatchingDeviceError("No OpenCL platforms found")
    if not 0 <= selector.platform_index < len(platforms):
        raise NoMatchingDeviceError(
            f"Platform index {selector.platform_index} out of range "
            f"({len(platforms)} platform(s) available)")

    platform = platforms[selector.platform_index]
    devices = list_devices(platform, selector.device_type)
    if not devices:
        raise NoMatchingDeviceError(
            f"Platform '{platform.name}' has no devices of type '{selector.device_type}'")
    if not 0 <= selector.device_index < len(devices):
        raise NoMatchingDeviceError(
            f"Device index {selector.device_index} out of range "
            f"({len(devices)} '{selector.device_type}' device(s) on '{platform.name}')")

    device = devices[selector.device_index]
    logger.debug("Discovered %s / %s (%s)", platform.name, device.name, selector.describe())
    return platform, device


def discover_all(selector=None):
    """Return every device matching the platform and type of ``selector``."""
    selector = selector or DeviceSelector()
    if selector.platform_index is None:
        return [best_device(selector.device_type)]

    platform, _ = discover(selector.with_device(0))
    return [(platform, device) for device in list_devices(platform, selector.device_type)]
