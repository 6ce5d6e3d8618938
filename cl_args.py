"""
Kernel argument binding and work-size validation.

OpenCL kernel arguments are positional and untyped at the API level: each
slot is set from (index, byte size, pointer). ``KernelArgs`` collects the
slots for one dispatch and refuses to hand out a partially bound or
mismatched list. When the program was built with ``-cl-kernel-arg-info``
each slot is also checked against the declared address space and type.

Work sizes are validated on the host before dispatch because the backend
error for a bad local size is usually an unhelpful INVALID_WORK_GROUP_SIZE.
"""

import numbers
import re

import numpy as np
import pyopencl as cl

from cl_errors import ArgumentBindingError, InvalidWorkSizeError
from cl_resources import MemoryResource, BufferResource, ImageResource, SVMResource

_UNBOUND = object()

# Byte sizes of OpenCL C scalar types; vectors scale with the element count
SCALAR_SIZES = {
    'char': 1, 'uchar': 1,
    'short': 2, 'ushort': 2, 'half': 2,
    'int': 4, 'uint': 4, 'float': 4,
    'long': 8, 'ulong': 8, 'double': 8,
}

_VECTOR_RE = re.compile(r'^([a-z]+?)(2|3|4|8|16)?$')


def scalar_size(type_name):
    """Byte size of an OpenCL C scalar or vector type, or None if unknown."""
    name = type_name.strip()
    if name.startswith('unsigned '):
        name = 'u' + name[len('unsigned '):].strip()
    match = _VECTOR_RE.match(name)
    if not match:
        return None
    base = SCALAR_SIZES.get(match.group(1))
    if base is None:
        return None
    count = int(match.group(2) or 1)
    # 3-component vectors are laid out like 4-component ones
    if count == 3:
        count = 4
    return base * count


def _describe(value):
    if isinstance(value, MemoryResource):
        return repr(value)
    if isinstance(value, cl.LocalMemory):
        return f"local memory ({value.size} bytes)"
    return f"{type(value).__name__} {value!r}"


class KernelArgs:
    """Positional argument list for one kernel.

    Typical use::

        args = KernelArgs(kernel)
        args.buffer(0, input_mem)
        args.local(1, 4 * 128)
        args.scalar(2, np.int32(n))
        args.buffer(3, output_mem)

    or ``KernelArgs(kernel).bind(input_mem, cl.LocalMemory(512), np.int32(n), output_mem)``.
    """

    def __init__(self, kernel):
        kernel.check_live()
        self.kernel = kernel
        self._slots = [_UNBOUND] * kernel.num_args

    def __len__(self):
        return len(self._slots)

    def _check_index(self, index):
        if not isinstance(index, numbers.Integral) or not 0 <= index < len(self._slots):
            raise ArgumentBindingError(
                f"Kernel '{self.kernel.name}' has {len(self._slots)} argument(s); "
                f"index {index!r} is out of range")

    def _info(self, index):
        if self.kernel.arg_info is None:
            return None
        return self.kernel.arg_info[index]

    def _check_value(self, index, value):
        info = self._info(index)
        where = f"argument {index} of kernel '{self.kernel.name}'"
        if info is not None:
            where += f" ({info.type_name} {info.name})"

        if isinstance(value, cl.LocalMemory):
            if value.size <= 0:
                raise ArgumentBindingError(f"{where}: local memory size must be positive")
        elif isinstance(value, MemoryResource):
            pass
        elif isinstance(value, cl.Sampler):
            pass
        else:
            nbytes = getattr(value, 'nbytes', None)
            if nbytes is None or not hasattr(value, 'dtype'):
                raise ArgumentBindingError(
                    f"{where}: scalar values must be sized numpy values "
                    f"(e.g. np.int32(n)), got {_describe(value)}")

        if info is None:
            return

        qualifier = info.address_qualifier
        if qualifier == cl.kernel_arg_address_qualifier.LOCAL:
            if not isinstance(value, cl.LocalMemory):
                raise ArgumentBindingError(
                    f"{where}: __local arguments take a size only, got {_describe(value)}")
        elif qualifier in (cl.kernel_arg_address_qualifier.GLOBAL,
                           cl.kernel_arg_address_qualifier.CONSTANT):
            if info.type_name.startswith('image'):
                if not isinstance(value, ImageResource):
                    raise ArgumentBindingError(f"{where}: expected an image, got {_describe(value)}")
            elif not isinstance(value, (BufferResource, SVMResource)):
                raise ArgumentBindingError(f"{where}: expected a buffer, got {_describe(value)}")
        elif info.type_name.startswith('image'):
            # some runtimes report images as __private
            if not isinstance(value, ImageResource):
                raise ArgumentBindingError(f"{where}: expected an image, got {_describe(value)}")
        elif info.type_name == 'sampler_t':
            if not isinstance(value, cl.Sampler):
                raise ArgumentBindingError(f"{where}: expected a sampler, got {_describe(value)}")
        else:
            if isinstance(value, (MemoryResource, cl.LocalMemory, cl.Sampler)):
                raise ArgumentBindingError(
                    f"{where}: expected a by-value scalar, got {_describe(value)}")
            expected = scalar_size(info.type_name)
            if expected is not None and value.nbytes != expected:
                raise ArgumentBindingError(
                    f"{where}: expected {expected} bytes, got {value.nbytes} "
                    f"({np.asarray(value).dtype})")

    def set(self, index, value):
        self._check_index(index)
        self._check_value(index, value)
        self._slots[index] = value
        return self

    def buffer(self, index, mem):
        if not isinstance(mem, MemoryResource):
            raise ArgumentBindingError(
                f"argument {index} of kernel '{self.kernel.name}': expected a memory object, "
                f"got {_describe(mem)}")
        return self.set(index, mem)

    def scalar(self, index, value):
        return self.set(index, value)

    def local(self, index, nbytes):
        return self.set(index, cl.LocalMemory(int(nbytes)))

    def bind(self, *values):
        """Bind ``values`` to slots 0..n-1 in order."""
        if len(values) > len(self._slots):
            raise ArgumentBindingError(
                f"Kernel '{self.kernel.name}' takes {len(self._slots)} argument(s), "
                f"got {len(values)}")
        for index, value in enumerate(values):
            self.set(index, value)
        return self

    def missing(self):
        return [i for i, value in enumerate(self._slots) if value is _UNBOUND]

    def validate(self):
        self.kernel.check_live()
        missing = self.missing()
        if missing:
            raise ArgumentBindingError(
                f"Kernel '{self.kernel.name}' has unbound argument slot(s): "
                f"{', '.join(str(i) for i in missing)}")
        for value in self._slots:
            if isinstance(value, MemoryResource):
                value.check_live()

    def backend_values(self):
        """Validated values in the form ``pyopencl.Kernel.set_arg`` accepts."""
        self.validate()
        return [v.kernel_arg() if isinstance(v, MemoryResource) else v for v in self._slots]


def _as_dims(size, name):
    if isinstance(size, numbers.Integral):
        size = (size,)
    try:
        dims = tuple(size)
    except TypeError:
        raise InvalidWorkSizeError(f"{name} work size must be an int or a sequence, got {size!r}")
    if not 1 <= len(dims) <= 3:
        raise InvalidWorkSizeError(f"{name} work size must have 1 to 3 dimensions, got {dims}")
    for extent in dims:
        if not isinstance(extent, numbers.Integral) or extent <= 0:
            raise InvalidWorkSizeError(f"{name} work size must be positive integers, got {dims}")
    return tuple(int(e) for e in dims)


def check_work_size(global_size, local_size=None, max_work_group_size=None,
                    max_work_item_sizes=None):
    """Validate and normalize a dispatch range. Returns ``(global, local)`` tuples."""
    global_dims = _as_dims(global_size, 'global')

    if max_work_item_sizes is not None and len(global_dims) > len(max_work_item_sizes):
        raise InvalidWorkSizeError(
            f"Device supports {len(max_work_item_sizes)} work-item dimension(s), "
            f"got {len(global_dims)}")

    if local_size is None:
        return global_dims, None

    local_dims = _as_dims(local_size, 'local')
    if len(local_dims) != len(global_dims):
        raise InvalidWorkSizeError(
            f"Local work size {local_dims} and global work size {global_dims} "
            f"have different dimensions")

    for dim, (g, l) in enumerate(zip(global_dims, local_dims)):
        if g % l:
            raise InvalidWorkSizeError(
                f"Local work size {l} does not evenly divide global work size {g} "
                f"in dimension {dim}")
        if max_work_item_sizes is not None and l > max_work_item_sizes[dim]:
            raise InvalidWorkSizeError(
                f"Local work size {l} exceeds the device maximum {max_work_item_sizes[dim]} "
                f"in dimension {dim}")

    group = 1
    for l in local_dims:
        group *= l
    if max_work_group_size is not None and group > max_work_group_size:
        raise InvalidWorkSizeError(
            f"Work-group of {group} items exceeds the device maximum {max_work_group_size}")

    return global_dims, local_dims


def round_up(group_size, global_size):
    """Smallest multiple of ``group_size`` not below ``global_size``."""
    remainder = global_size % group_size
    if remainder == 0:
        return global_size
    return global_size + group_size - remainder
