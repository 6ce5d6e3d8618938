"""
Configuration shared by the compute samples.

Defaults select platform 0, any device type, device 0. They can be
overridden through environment variables or positional command-line
arguments::

    python sample_vector_add.py [platform [device_type [device]]]

    CL_SAMPLES_PLATFORM=1 CL_SAMPLES_DEVICE_TYPE=gpu python sample_reduction.py

A platform of ``auto`` picks the best-scoring device across all platforms.
"""

import logging
import os
import sys
from collections import namedtuple

import pyopencl as cl

# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_PLATFORM_INDEX = 0
DEFAULT_DEVICE_TYPE = 'all'
DEFAULT_DEVICE_INDEX = 0

KERNEL_DIR = os.environ.get(
    'CL_SAMPLES_KERNEL_DIR',
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'kernels'))

DEVICE_TYPES = {
    'all': cl.device_type.ALL,
    'default': cl.device_type.DEFAULT,
    'cpu': cl.device_type.CPU,
    'gpu': cl.device_type.GPU,
    'accelerator': cl.device_type.ACCELERATOR,
}

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


class DeviceSelector(namedtuple('DeviceSelector', 'platform_index device_type device_index')):
    """Which platform/device a session should bind to.

    ``platform_index=None`` requests auto-selection across all platforms.
    """
    __slots__ = ()

    def __new__(cls, platform_index=DEFAULT_PLATFORM_INDEX,
                device_type=DEFAULT_DEVICE_TYPE, device_index=DEFAULT_DEVICE_INDEX):
        device_type = str(device_type).lower()
        if device_type not in DEVICE_TYPES:
            raise ValueError(
                f"Unknown device type '{device_type}', expected one of "
                f"{', '.join(sorted(DEVICE_TYPES))}")
        return super().__new__(cls, platform_index, device_type, device_index)

    @property
    def cl_device_type(self):
        return DEVICE_TYPES[self.device_type]

    def with_device(self, device_index):
        return self._replace(device_index=device_index)

    def describe(self):
        platform = 'auto' if self.platform_index is None else self.platform_index
        return f"platform={platform} type={self.device_type} device={self.device_index}"


class QueueOptions(namedtuple('QueueOptions', 'profiling out_of_order')):
    __slots__ = ()

    def __new__(cls, profiling=False, out_of_order=False):
        return super().__new__(cls, bool(profiling), bool(out_of_order))

    @property
    def properties(self):
        """Bitfield for ``pyopencl.CommandQueue``."""
        props = 0
        if self.profiling:
            props |= cl.command_queue_properties.PROFILING_ENABLE
        if self.out_of_order:
            props |= cl.command_queue_properties.OUT_OF_ORDER_EXEC_MODE_ENABLE
        return props


def _parse_index(value, name):
    if value is None or value == '':
        return None
    if str(value).lower() == 'auto':
        return 'auto'
    try:
        index = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer or 'auto', got '{value}'")
    if index < 0:
        raise ValueError(f"{name} must not be negative, got {index}")
    return index


def _env_flag(environ, name, default=False):
    value = environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def selector_from_env(environ=None):
    """Build a DeviceSelector from ``CL_SAMPLES_*`` environment variables."""
    environ = os.environ if environ is None else environ

    platform = _parse_index(environ.get('CL_SAMPLES_PLATFORM'), 'CL_SAMPLES_PLATFORM')
    device = _parse_index(environ.get('CL_SAMPLES_DEVICE'), 'CL_SAMPLES_DEVICE')
    device_type = environ.get('CL_SAMPLES_DEVICE_TYPE') or DEFAULT_DEVICE_TYPE

    if platform == 'auto':
        platform_index = None
    elif platform is None:
        platform_index = DEFAULT_PLATFORM_INDEX
    else:
        platform_index = platform

    if device is None or device == 'auto':
        device = DEFAULT_DEVICE_INDEX

    return DeviceSelector(platform_index, device_type, device)


def selector_from_args(argv=None, environ=None):
    """Positional ``[platform [device_type [device]]]`` arguments over the environment."""
    argv = sys.argv[1:] if argv is None else list(argv)
    selector = selector_from_env(environ)

    if len(argv) > 0:
        platform = _parse_index(argv[0], 'platform')
        selector = selector._replace(platform_index=None if platform == 'auto' else platform)
    if len(argv) > 1:
        selector = DeviceSelector(selector.platform_index, argv[1], selector.device_index)
    if len(argv) > 2:
        device = _parse_index(argv[2], 'device')
        selector = selector.with_device(DEFAULT_DEVICE_INDEX if device == 'auto' else device)
    return selector


def queue_options_from_env(profiling=None, out_of_order=False, environ=None):
    environ = os.environ if environ is None else environ
    if profiling is None:
        profiling = _env_flag(environ, 'CL_SAMPLES_PROFILING')
    return QueueOptions(profiling=profiling, out_of_order=out_of_order)


def configure_logging(level=None):
    """Configure root logging from ``CL_SAMPLES_LOG_LEVEL`` (default WARNING)."""
    if level is None:
        level = os.environ.get('CL_SAMPLES_LOG_LEVEL', 'WARNING')
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    return level


def kernel_path(name):
    if not name.endswith('.cl'):
        name += '.cl'
    return os.path.join(KERNEL_DIR, name)


def load_kernel_source(name):
    """Read a kernel source file from the kernel directory as UTF-8 text."""
    with open(kernel_path(name), encoding='utf-8') as f:
        return f.read()
