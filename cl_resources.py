"""
Handle wrappers for OpenCL objects owned by a compute session.

Each wrapper records its owner and the live resources that depend on it,
so releases can be checked against the ownership graph:

    context ─┬─ queue
             ├─ program
             ├─ kernel
             ├─ buffer ── sub-buffer
             ├─ image
             └─ svm allocation

A kernel does not depend on the program it came from; the program can be
released as soon as the kernel has been extracted.

Every wrapper is released exactly once. A second release raises
DoubleReleaseError, releasing while dependents are alive (or while a
memory object is mapped) raises ResourceStillInUseError, and using a
released wrapper raises ResourceReleasedError.
"""

import logging
import threading
from collections import namedtuple

import pyopencl as cl

from cl_errors import DoubleReleaseError, ResourceStillInUseError, ResourceReleasedError

logger = logging.getLogger(__name__)

ArgInfo = namedtuple('ArgInfo', 'name address_qualifier access_qualifier type_qualifier type_name')


class Resource:
    """An owned backend handle with exactly-once release."""

    kind = 'resource'

    def __init__(self, handle, owner=None, label=None):
        if owner is not None:
            owner.check_live()
        self.handle = handle
        self.owner = owner
        self.label = label or self.kind
        self._dependents = []
        self._released = False
        if owner is not None:
            owner._dependents.append(self)

    def __repr__(self):
        state = 'released' if self._released else 'live'
        return f"<{type(self).__name__} {self.label!r} {state}>"

    @property
    def released(self):
        return self._released

    @property
    def dependents(self):
        return tuple(self._dependents)

    def check_live(self):
        if self._released:
            raise ResourceReleasedError(f"{self.kind} {self.label!r} used after release")

    def busy_reason(self):
        """Why this resource cannot be released right now, or None."""
        if self._dependents:
            names = ', '.join(repr(d) for d in self._dependents)
            return f"still referenced by {names}"
        return None

    def release(self):
        if self._released:
            raise DoubleReleaseError(f"{self.kind} {self.label!r} released twice")
        reason = self.busy_reason()
        if reason:
            raise ResourceStillInUseError(f"Cannot release {self.kind} {self.label!r}: {reason}")

        try:
            self._free()
        finally:
            self._released = True
            self.handle = None
            if self.owner is not None:
                self.owner._dependents.remove(self)
            logger.debug("Released %s %r", self.kind, self.label)
        self._after_release()

    def _free(self):
        """Give the backend object back. PyOpenCL frees most objects on collection."""

    def _after_release(self):
        pass


class ContextResource(Resource):
    kind = 'context'

    def __init__(self, handle, devices, label=None):
        super().__init__(handle, label=label)
        self.devices = list(devices)


class QueueResource(Resource):
    kind = 'queue'

    def __init__(self, handle, context, device, options, label=None):
        super().__init__(handle, owner=context, label=label)
        self.device = device
        self.options = options

    def finish(self):
        self.check_live()
        self.handle.finish()

    def _free(self):
        # Outstanding commands must not outlive the queue
        self.handle.finish()


class ProgramResource(Resource):
    kind = 'program'

    def __init__(self, handle, context, options='', label=None):
        super().__init__(handle, owner=context, label=label)
        self.options = options

    @property
    def kernel_names(self):
        self.check_live()
        names = self.handle.get_info(cl.program_info.KERNEL_NAMES)
        return [n for n in names.split(';') if n]


class KernelResource(Resource):
    kind = 'kernel'

    def __init__(self, handle, context, name, num_args, arg_info=None):
        super().__init__(handle, owner=context, label=name)
        self.name = name
        self.num_args = num_args
        # None when the program was built without argument metadata
        self.arg_info = arg_info


class MemoryResource(Resource):
    """A buffer or image. ``host`` keeps an aliased host array alive."""

    kind = 'memory'

    def __init__(self, handle, owner, size, access, policy=None, host=None, label=None):
        super().__init__(handle, owner=owner, label=label)
        self.size = size
        self.access = access
        self.policy = policy
        self.host = host if policy == 'use' else None
        self.mapped = False
        self._release_callbacks = []
        self._callback_lock = threading.Lock()

    def busy_reason(self):
        if self.mapped:
            return "still mapped into host memory"
        return super().busy_reason()

    def on_release(self, callback):
        """Register ``callback(resource)`` to run once after this object is released."""
        self.check_live()
        with self._callback_lock:
            self._release_callbacks.append(callback)

    def kernel_arg(self):
        """The value ``pyopencl.Kernel.set_arg`` takes for this object."""
        return self.handle

    def _free(self):
        self.handle.release()

    def _after_release(self):
        with self._callback_lock:
            callbacks, self._release_callbacks = self._release_callbacks, []
        self.host = None
        for callback in callbacks:
            callback(self)


class BufferResource(MemoryResource):
    kind = 'buffer'

    def __init__(self, handle, owner, size, access, policy=None, host=None,
                 offset=0, label=None):
        super().__init__(handle, owner, size, access, policy=policy, host=host, label=label)
        self.offset = offset

    @property
    def is_sub_buffer(self):
        return isinstance(self.owner, BufferResource)


class ImageResource(MemoryResource):
    kind = 'image'

    def __init__(self, handle, owner, shape, image_format, access, policy=None,
                 host=None, label=None):
        size = image_format.itemsize
        for extent in shape:
            size *= extent
        super().__init__(handle, owner, size, access, policy=policy, host=host, label=label)
        self.shape = tuple(shape)
        self.image_format = image_format


class SVMResource(MemoryResource):
    """Coarse-grained shared virtual memory owned by the context.

    ``array`` is the host view of the allocation. The host may only touch it
    while the allocation is mapped.
    """

    kind = 'svm'

    def __init__(self, array, context, access, label=None):
        super().__init__(array, context, array.nbytes, access, label=label)

    @property
    def array(self):
        self.check_live()
        return self.handle

    def kernel_arg(self):
        return cl.SVM(self.handle)

    def _free(self):
        # the numpy view's base is the SVMAllocation
        self.handle.base.release()
