"""
Compute session: one device, one context, the resources of one unit of work.

A session walks through

    UNINITIALIZED -> DISCOVERED -> ACQUIRED -> {BUILT, ALLOCATED}* -> DISPATCHED*
                  -> COMPLETED -> RELEASED

and drops into FAILED on any backend failure, after which only ``close()``
and ``release()`` are accepted. Host-side validation errors (argument
binding, work sizes, transfer regions) are raised before anything reaches
the backend and leave the state alone.

Use it as a context manager so everything is drained and released on every
exit path::

    with ComputeSession(DeviceSelector(0, 'all', 0)) as session:
        kernel = session.build(SOURCE, 'vectorAdd')
        a = session.allocate(host=a_host, access='read_only')
        ...
        session.dispatch(kernel, [a, b, c], n)
        session.read(c, out)

Release order on close: sub-buffers, buffers, images and SVM allocations,
kernels, programs, queues, context.
"""

import contextlib
import enum
import logging
import threading

import numpy as np
import pyopencl as cl

import cl_devices
from cl_args import KernelArgs, check_work_size
from cl_config import DeviceSelector, QueueOptions
from cl_errors import (
    ArgumentBindingError, CompileError, DiscoveryError, EntryPointNotFoundError,
    InvalidRegionError, InvalidWorkSizeError, KernelExecutionError, MapStateError,
    ResourceExhaustedError, SessionStateError, UnsupportedFeatureError, backend_status,
    constant_name, status_name,
)
from cl_resources import (
    ArgInfo, BufferResource, ContextResource, ImageResource, KernelResource,
    ProgramResource, QueueResource, SVMResource,
)

logger = logging.getLogger(__name__)

mf = cl.mem_flags

ACCESS_FLAGS = {
    'read_only': mf.READ_ONLY,
    'write_only': mf.WRITE_ONLY,
    'read_write': mf.READ_WRITE,
}

HOST_POLICIES = {
    None: 0,
    'copy': mf.COPY_HOST_PTR,
    'use': mf.USE_HOST_PTR,
    'alloc_host': mf.ALLOC_HOST_PTR,
}

MAP_MODES = {
    'read': cl.map_flags.READ,
    'write': cl.map_flags.WRITE,
    'read_write': cl.map_flags.READ | cl.map_flags.WRITE,
}

ARG_INFO_OPTION = '-cl-kernel-arg-info'

# Status codes that mean the backend ran out of something
_EXHAUSTION_CODES = {
    cl.status_code.OUT_OF_RESOURCES,
    cl.status_code.OUT_OF_HOST_MEMORY,
    cl.status_code.MEM_OBJECT_ALLOCATION_FAILURE,
}


class SessionState(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    DISCOVERED = 'discovered'
    ACQUIRED = 'acquired'
    BUILT = 'built'
    ALLOCATED = 'allocated'
    DISPATCHED = 'dispatched'
    COMPLETED = 'completed'
    RELEASED = 'released'
    FAILED = 'failed'


ACTIVE_STATES = frozenset([
    SessionState.ACQUIRED, SessionState.BUILT, SessionState.ALLOCATED,
    SessionState.DISPATCHED, SessionState.COMPLETED,
])


def _triple(values, fill):
    values = tuple(int(v) for v in values)
    if not 1 <= len(values) <= 3:
        raise InvalidRegionError(f"Expected 1 to 3 coordinates, got {values}")
    return values + (fill,) * (3 - len(values))


def _rect_extent(origin, region, row_pitch, slice_pitch):
    """One past the last byte touched by a rectangular region."""
    return (origin[0] + origin[1] * row_pitch + origin[2] * slice_pitch
            + (region[2] - 1) * slice_pitch + (region[1] - 1) * row_pitch + region[0])


def _pitches(pitches, region):
    row, slice_ = (tuple(pitches) + (0, 0))[:2] if pitches else (0, 0)
    row = row or region[0]
    slice_ = slice_ or region[1] * row
    if row < region[0] or slice_ < region[1] * row:
        raise InvalidRegionError(
            f"Pitches (row={row}, slice={slice_}) are smaller than region {region}")
    return row, slice_


def _first_failure(events):
    """The first (event, status) pair whose execution status is an error, or None."""
    for event in events:
        try:
            status = event.command_execution_status
        except cl.Error:
            continue
        if status < 0:
            return event, status
    return None


def _command_name(event):
    try:
        command = event.command_type
    except cl.Error:
        return 'UNKNOWN'
    return constant_name(cl.command_type, command, str(command))


def _writable_host(host):
    if not isinstance(host, np.ndarray) or not host.flags.c_contiguous or not host.flags.writeable:
        raise ValueError("Read destination must be a writable C-contiguous numpy array")
    return host


class ComputeSession:
    """Owns the device, context, queues and every resource created for one unit of work."""

    def __init__(self, selector=None, queue_options=None, name='session'):
        self.selector = selector or DeviceSelector()
        self.queue_options = queue_options or QueueOptions()
        self.name = name
        self.state = SessionState.UNINITIALIZED
        self.platform = None
        self.device = None
        self.context = None
        self.queue = None
        self._queues = []
        self._programs = []
        self._kernels = []
        self._memory = []
        self._outstanding = []

    def __repr__(self):
        return f"<ComputeSession {self.name!r} {self.state.value}>"

    def __enter__(self):
        try:
            self.open()
        except Exception:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None and self.state in ACTIVE_STATES:
            logger.debug("%s: leaving on %s, releasing resources", self.name, exc_type.__name__)
        self.close()
        return False

    # =========================================================================
    # STATE
    # =========================================================================

    def _fail(self, what):
        logger.debug("%s: %s failed, session is now FAILED", self.name, what)
        self.state = SessionState.FAILED

    def _advance(self, state):
        if self.state in ACTIVE_STATES:
            self.state = state

    def _require_active(self, what):
        if self.state in ACTIVE_STATES:
            return
        if self.state is SessionState.FAILED:
            raise SessionStateError(f"Cannot {what}: session failed, only close() is allowed")
        if self.state is SessionState.RELEASED:
            raise SessionStateError(f"Cannot {what}: session has been released")
        raise SessionStateError(f"Cannot {what}: session has not acquired a context yet")

    @contextlib.contextmanager
    def _backend(self, what, error_cls=KernelExecutionError):
        """Translate ``pyopencl.Error`` into the session's taxonomy and fail the session."""
        try:
            yield
        except cl.Error as e:
            status = backend_status(e)
            self._fail(what)
            if status in _EXHAUSTION_CODES:
                error_cls = ResourceExhaustedError
            raise error_cls(f"{what} failed: {e}", status) from e

    @property
    def device_name(self):
        return self.device.name.strip() if self.device is not None else None

    def describe(self):
        if self.device is None:
            return f"{self.name}: no device"
        return f"{self.name}: {self.platform.name.strip()} / {self.device_name}"

    # =========================================================================
    # DISCOVER / ACQUIRE
    # =========================================================================

    def discover(self, selector=None):
        """Bind a (platform, device) pair. Can be repeated until ``acquire``."""
        if self.state not in (SessionState.UNINITIALIZED, SessionState.DISCOVERED):
            raise SessionStateError(f"Cannot discover in state {self.state.value}")
        if selector is not None:
            self.selector = selector
        try:
            self.platform, self.device = cl_devices.discover(self.selector)
        except DiscoveryError:
            self._fail('discovery')
            raise
        self.state = SessionState.DISCOVERED
        return self.platform, self.device

    def acquire(self, device=None, queue_options=None):
        """Create the context and the default command queue."""
        if device is not None and self.state is SessionState.UNINITIALIZED:
            self.device = device
            self.platform = device.platform
            self.state = SessionState.DISCOVERED
        if self.state is not SessionState.DISCOVERED:
            raise SessionStateError(f"Cannot acquire in state {self.state.value}")
        if device is not None and device != self.device:
            raise SessionStateError("Session already discovered a different device")
        if queue_options is not None:
            self.queue_options = queue_options

        with self._backend(f"creating a context on {self.device_name}", ResourceExhaustedError):
            handle = cl.Context([self.device])
        self.context = ContextResource(handle, [self.device], label=f"{self.name}-context")

        self.state = SessionState.ACQUIRED
        self.queue = self.add_queue(self.queue_options)

        logger.debug("%s: acquired context and queue on %s (%s)",
                     self.name, self.device_name, self.queue_options)
        return self.context, self.queue

    def open(self):
        """Discover and acquire in one step."""
        self.discover()
        self.acquire()
        return self

    def add_queue(self, queue_options=None):
        """Create an additional command queue on the session's device."""
        self._require_active('create a queue')
        options = queue_options or QueueOptions()
        with self._backend(f"creating a command queue ({options})", ResourceExhaustedError):
            handle = cl.CommandQueue(self.context.handle, self.device,
                                     properties=options.properties)
        queue = QueueResource(handle, self.context, self.device, options,
                              label=f"{self.name}-queue{len(self._queues)}")
        self._queues.append(queue)
        return queue

    # =========================================================================
    # BUILD
    # =========================================================================

    def compile(self, source, options='', arg_info=True):
        """Compile ``source`` into a program. Raises CompileError with the build log."""
        self._require_active('compile a program')
        options = (options or '').strip()
        if arg_info and ARG_INFO_OPTION not in options.split():
            options = f"{options} {ARG_INFO_OPTION}".strip()

        try:
            program = cl.Program(self.context.handle, source)
            program.build(options=options, devices=[self.device])
        except cl.Error as e:
            self._fail('program build')
            raise CompileError(f"Program build failed on {self.device_name}",
                               log=str(e), options=options) from e

        resource = ProgramResource(program, self.context, options=options)
        self._programs.append(resource)
        self._advance(SessionState.BUILT)
        logger.debug("%s: built program with options %r", self.name, options)
        return resource

    def _arg_info(self, kernel, num_args):
        info = []
        try:
            for i in range(num_args):
                info.append(ArgInfo(
                    kernel.get_arg_info(i, cl.kernel_arg_info.NAME),
                    kernel.get_arg_info(i, cl.kernel_arg_info.ADDRESS_QUALIFIER),
                    kernel.get_arg_info(i, cl.kernel_arg_info.ACCESS_QUALIFIER),
                    kernel.get_arg_info(i, cl.kernel_arg_info.TYPE_QUALIFIER),
                    kernel.get_arg_info(i, cl.kernel_arg_info.TYPE_NAME).strip(),
                ))
        except cl.Error as e:
            logger.debug("Argument info unavailable: %s", status_name(backend_status(e)))
            return None
        return info

    def kernel(self, program, entry_point):
        """Extract the named entry point from a built program."""
        self._require_active('create a kernel')
        program.check_live()
        available = program.kernel_names
        if entry_point not in available:
            self._fail('kernel extraction')
            raise EntryPointNotFoundError(entry_point, available)

        try:
            handle = cl.Kernel(program.handle, entry_point)
        except cl.Error as e:
            self._fail('kernel extraction')
            raise EntryPointNotFoundError(entry_point, available) from e

        num_args = handle.get_info(cl.kernel_info.NUM_ARGS)
        kernel = KernelResource(handle, self.context, entry_point, num_args,
                                self._arg_info(handle, num_args))
        self._kernels.append(kernel)
        return kernel

    def build(self, source, entry_point, options=''):
        """Compile, extract ``entry_point`` and release the program right away."""
        program = self.compile(source, options)
        try:
            return self.kernel(program, entry_point)
        finally:
            self.release(program)

    def new_args(self, kernel):
        return KernelArgs(kernel)

    # =========================================================================
    # ALLOCATE
    # =========================================================================

    def _mem_flags(self, access, policy, host):
        if access not in ACCESS_FLAGS:
            raise ValueError(f"Unknown access mode '{access}', expected one of {sorted(ACCESS_FLAGS)}")
        if policy not in HOST_POLICIES:
            raise ValueError(f"Unknown host policy '{policy}', expected copy, use or alloc_host")
        if policy in ('copy', 'use') and host is None:
            raise ValueError(f"Host policy '{policy}' needs host data")
        flags = ACCESS_FLAGS[access] | HOST_POLICIES[policy]
        if policy == 'alloc_host' and host is not None:
            flags |= mf.COPY_HOST_PTR
        return flags

    def allocate(self, size=None, access='read_write', host=None, policy=None, label=None):
        """Create a buffer.

        ``policy``: ``'copy'`` snapshots ``host`` now, ``'use'`` aliases it (do not
        touch it while device work is outstanding), ``'alloc_host'`` asks for
        host-accessible memory, ``None`` leaves the buffer uninitialized.
        Host data without a policy is copied.
        """
        self._require_active('allocate memory')
        if host is not None:
            if policy is None:
                policy = 'copy'
            if policy == 'use':
                if not isinstance(host, np.ndarray) or not host.flags.c_contiguous:
                    raise ValueError("'use' needs a C-contiguous numpy array to alias")
            else:
                host = np.ascontiguousarray(host)
            if size is None:
                size = host.nbytes
            if size > host.nbytes:
                raise InvalidRegionError(
                    f"Buffer of {size} bytes cannot be initialized from {host.nbytes} host bytes")
        if size is None or size <= 0:
            raise InvalidRegionError(f"Buffer size must be positive, got {size}")

        flags = self._mem_flags(access, policy, host)
        with self._backend(f"allocating {size} bytes", ResourceExhaustedError):
            handle = cl.Buffer(self.context.handle, flags, size=size, hostbuf=host)

        buffer = BufferResource(handle, self.context, size, access, policy=policy, host=host,
                                label=label)
        self._memory.append(buffer)
        self._advance(SessionState.ALLOCATED)
        logger.debug("%s: allocated %s (%d bytes, %s, %s)", self.name, buffer.label, size,
                     access, policy)
        return buffer

    def allocate_image(self, shape, channel_order='RGBA', channel_type='UNSIGNED_INT8',
                       access='read_only', host=None, policy=None, pitches=None, label=None):
        """Create a 2D or 3D image. ``shape`` is (width, height[, depth])."""
        self._require_active('allocate an image')
        if not self.device.image_support:
            raise UnsupportedFeatureError(f"{self.device_name} does not support images")
        if host is not None and policy is None:
            policy = 'copy'
        flags = self._mem_flags(access, policy, host)
        image_format = cl.ImageFormat(getattr(cl.channel_order, channel_order),
                                      getattr(cl.channel_type, channel_type))

        with self._backend(f"allocating a {channel_order}/{channel_type} image {tuple(shape)}",
                           ResourceExhaustedError):
            handle = cl.create_image(self.context.handle, flags, image_format,
                                     shape=tuple(shape), pitches=pitches, hostbuf=host)

        image = ImageResource(handle, self.context, shape, image_format, access,
                              policy=policy, host=host, label=label)
        self._memory.append(image)
        self._advance(SessionState.ALLOCATED)
        return image

    def allocate_svm(self, shape, dtype=np.float32, access='read_write', label=None):
        """Allocate coarse-grained shared virtual memory (OpenCL 2.0).

        Bind it to kernels like a buffer; read or write ``svm.array`` only
        inside ``map_svm``.
        """
        self._require_active('allocate shared virtual memory')
        if not cl_devices.supports_svm(self.device):
            raise UnsupportedFeatureError(
                f"{self.device_name} does not support shared virtual memory")
        if access not in ACCESS_FLAGS:
            raise ValueError(f"Unknown access mode '{access}', expected one of {sorted(ACCESS_FLAGS)}")
        dtype = np.dtype(dtype)
        count = int(np.prod(shape))
        if count <= 0:
            raise InvalidRegionError(f"SVM shape must be positive, got {shape}")

        flags = getattr(cl.svm_mem_flags, access.upper())
        with self._backend(f"allocating {count * dtype.itemsize} bytes of SVM",
                           ResourceExhaustedError):
            array = cl.svm_empty(self.context.handle, flags, shape, dtype)

        svm = SVMResource(array, self.context, access, label=label)
        self._memory.append(svm)
        self._advance(SessionState.ALLOCATED)
        logger.debug("%s: allocated SVM %s (%d bytes, %s)", self.name, svm.label,
                     svm.size, access)
        return svm

    def sub_buffer(self, buffer, offset, size, access=None, label=None):
        """Create a view of ``size`` bytes of ``buffer`` starting at byte ``offset``."""
        self._require_active('create a sub-buffer')
        buffer.check_live()
        if buffer.is_sub_buffer:
            raise InvalidRegionError("Sub-buffers cannot be created from other sub-buffers")
        if offset < 0 or size <= 0 or offset + size > buffer.size:
            raise InvalidRegionError(
                f"Sub-buffer [{offset}, {offset + size}) outside buffer of {buffer.size} bytes")
        align = max(self.device.mem_base_addr_align // 8, 1)
        if offset % align:
            raise InvalidRegionError(
                f"Sub-buffer offset {offset} is not a multiple of the device's "
                f"base address alignment ({align} bytes)")

        flags = ACCESS_FLAGS[access] if access is not None else 0
        with self._backend(f"creating sub-buffer [{offset}, {offset + size})",
                           ResourceExhaustedError):
            handle = buffer.handle.get_sub_region(offset, size, flags)

        sub = BufferResource(handle, buffer, size, access or buffer.access, offset=offset,
                             label=label or f"{buffer.label}[{offset}:{offset + size}]")
        self._memory.append(sub)
        return sub

    # =========================================================================
    # DISPATCH / SYNCHRONIZE
    # =========================================================================

    def _queue(self, queue):
        queue = queue or self.queue
        queue.check_live()
        return queue

    def _track(self, event):
        self._outstanding.append(event)
        return event

    def dispatch(self, kernel, args, global_size, local_size=None, wait_for=None, queue=None):
        """Enqueue ``kernel`` over ``global_size`` work-items. Returns the event."""
        self._require_active('dispatch a kernel')
        kernel.check_live()
        queue = self._queue(queue)
        if not isinstance(args, KernelArgs):
            args = KernelArgs(kernel).bind(*args)
        if args.kernel is not kernel:
            raise ArgumentBindingError(
                f"Arguments were bound for kernel '{args.kernel.name}', not '{kernel.name}'")

        global_dims, local_dims = check_work_size(
            global_size, local_size,
            max_work_group_size=self.device.max_work_group_size,
            max_work_item_sizes=self.device.max_work_item_sizes)
        values = args.backend_values()

        if local_dims is not None:
            group = int(np.prod(local_dims))
            kernel_max = kernel.handle.get_work_group_info(
                cl.kernel_work_group_info.WORK_GROUP_SIZE, self.device)
            if group > kernel_max:
                raise InvalidWorkSizeError(
                    f"Work-group of {group} items exceeds the maximum of {kernel_max} "
                    f"for kernel '{kernel.name}' on {self.device_name}")

        for index, value in enumerate(values):
            try:
                kernel.handle.set_arg(index, value)
            except cl.Error as e:
                raise ArgumentBindingError(
                    f"Backend rejected argument {index} of kernel '{kernel.name}': "
                    f"{status_name(backend_status(e))}") from e

        with self._backend(f"dispatch of kernel '{kernel.name}'"):
            event = cl.enqueue_nd_range_kernel(queue.handle, kernel.handle, global_dims,
                                               local_dims, wait_for=wait_for)
        self._advance(SessionState.DISPATCHED)
        return self._track(event)

    def user_event(self):
        """A manually signaled event for use in wait-lists."""
        self._require_active('create a user event')
        return cl.UserEvent(self.context.handle)

    def signal(self, event, status=None):
        if status is None:
            status = cl.command_execution_status.COMPLETE
        event.set_status(status)

    def on_complete(self, event, callback):
        """Call ``callback(event, status)`` once the event is terminal.

        Runs on a backend thread; at most once.
        """
        lock = threading.Lock()
        fired = []

        def handler(status):
            with lock:
                if fired:
                    return
                fired.append(status)
            try:
                callback(event, status)
            except Exception:
                logger.exception("%s: event callback raised", self.name)

        event.set_callback(cl.command_execution_status.COMPLETE, handler)

    def await_all(self, events=None):
        """Block until ``events`` (default: everything outstanding) are terminal."""
        self._require_active('wait for events')
        events = list(self._outstanding if events is None else events)
        if events:
            try:
                cl.wait_for_events(events)
            except cl.Error as e:
                # the wait itself only reports that some event failed
                failed = _first_failure(events)
                self._fail('waiting for events')
                if failed is None:
                    raise KernelExecutionError(f"Waiting for events failed: {e}",
                                               backend_status(e)) from e
                event, status = failed
                raise KernelExecutionError(
                    f"Command {_command_name(event)} completed with an error", status) from e
            failed = _first_failure(events)
            if failed is not None:
                event, status = failed
                self._fail('command execution')
                raise KernelExecutionError(
                    f"Command {_command_name(event)} completed with an error", status)
            self._outstanding = [e for e in self._outstanding
                                 if not any(e is done for done in events)]
        if not self._outstanding:
            self._advance(SessionState.COMPLETED)
        return events

    def finish(self):
        """Wait for everything outstanding, then drain every queue."""
        self.await_all()
        for queue in self._queues:
            if not queue.released:
                with self._backend('finishing a queue'):
                    queue.finish()

    # =========================================================================
    # TRANSFER
    # =========================================================================

    def _transfer_done(self, event, blocking):
        if not blocking:
            self._track(event)
        return event

    def write(self, buffer, host, offset=0, blocking=True, wait_for=None, queue=None):
        """Copy ``host`` into ``buffer`` at byte ``offset``."""
        self._require_active('write to a buffer')
        buffer.check_live()
        queue = self._queue(queue)
        host = np.ascontiguousarray(host)
        if offset < 0 or offset + host.nbytes > buffer.size:
            raise InvalidRegionError(
                f"Write of {host.nbytes} bytes at offset {offset} exceeds "
                f"{buffer.label} ({buffer.size} bytes)")
        with self._backend(f"write to {buffer.label}"):
            event = cl.enqueue_copy(queue.handle, buffer.handle, host, dst_offset=offset,
                                    is_blocking=blocking, wait_for=wait_for)
        return self._transfer_done(event, blocking)

    def read(self, buffer, host, offset=0, blocking=True, wait_for=None, queue=None):
        """Copy ``host.nbytes`` bytes of ``buffer`` starting at byte ``offset`` into ``host``."""
        self._require_active('read from a buffer')
        buffer.check_live()
        queue = self._queue(queue)
        host = _writable_host(host)
        if offset < 0 or offset + host.nbytes > buffer.size:
            raise InvalidRegionError(
                f"Read of {host.nbytes} bytes at offset {offset} exceeds "
                f"{buffer.label} ({buffer.size} bytes)")
        with self._backend(f"read from {buffer.label}"):
            event = cl.enqueue_copy(queue.handle, host, buffer.handle, src_offset=offset,
                                    is_blocking=blocking, wait_for=wait_for)
        return self._transfer_done(event, blocking)

    def _rect_args(self, buffer, host, buffer_origin, host_origin, region,
                   buffer_pitches, host_pitches):
        region = _triple(region, 1)
        buffer_origin = _triple(buffer_origin, 0)
        host_origin = _triple(host_origin, 0)
        if min(region) <= 0:
            raise InvalidRegionError(f"Region must be positive, got {region}")
        buffer_pitches = _pitches(buffer_pitches, region)
        host_pitches = _pitches(host_pitches, region)

        if _rect_extent(buffer_origin, region, *buffer_pitches) > buffer.size:
            raise InvalidRegionError(
                f"Region {region} at {buffer_origin} with pitches {buffer_pitches} "
                f"exceeds {buffer.label} ({buffer.size} bytes)")
        if _rect_extent(host_origin, region, *host_pitches) > host.nbytes:
            raise InvalidRegionError(
                f"Region {region} at {host_origin} with pitches {host_pitches} "
                f"exceeds the host array ({host.nbytes} bytes)")
        return dict(buffer_origin=buffer_origin, host_origin=host_origin, region=region,
                    buffer_pitches=buffer_pitches, host_pitches=host_pitches)

    def write_rect(self, buffer, host, buffer_origin, host_origin, region,
                   buffer_pitches=None, host_pitches=None, blocking=True, wait_for=None,
                   queue=None):
        """Write a rectangular region. Origins/region x components and pitches are in bytes."""
        self._require_active('write a buffer region')
        buffer.check_live()
        queue = self._queue(queue)
        host = np.ascontiguousarray(host)
        kwargs = self._rect_args(buffer, host, buffer_origin, host_origin, region,
                                 buffer_pitches, host_pitches)
        with self._backend(f"rectangular write to {buffer.label}"):
            event = cl.enqueue_copy(queue.handle, buffer.handle, host, is_blocking=blocking,
                                    wait_for=wait_for, **kwargs)
        return self._transfer_done(event, blocking)

    def read_rect(self, buffer, host, buffer_origin, host_origin, region,
                  buffer_pitches=None, host_pitches=None, blocking=True, wait_for=None,
                  queue=None):
        """Read a rectangular region. Origins/region x components and pitches are in bytes."""
        self._require_active('read a buffer region')
        buffer.check_live()
        queue = self._queue(queue)
        host = _writable_host(host)
        kwargs = self._rect_args(buffer, host, buffer_origin, host_origin, region,
                                 buffer_pitches, host_pitches)
        with self._backend(f"rectangular read from {buffer.label}"):
            event = cl.enqueue_copy(queue.handle, host, buffer.handle, is_blocking=blocking,
                                    wait_for=wait_for, **kwargs)
        return self._transfer_done(event, blocking)

    def _image_region(self, image, host, origin, region, pitches):
        dims = len(image.shape)
        origin = tuple(origin) if origin is not None else (0,) * dims
        region = tuple(region) if region is not None else image.shape
        if len(origin) != dims or len(region) != dims:
            raise InvalidRegionError(f"Image {image.label} has {dims} dimensions")
        for o, r, extent in zip(origin, region, image.shape):
            if o < 0 or r <= 0 or o + r > extent:
                raise InvalidRegionError(
                    f"Region {region} at {origin} outside image {image.shape}")
        if not pitches:
            needed = image.image_format.itemsize * int(np.prod(region))
            if host.nbytes < needed:
                raise InvalidRegionError(
                    f"Host array of {host.nbytes} bytes is smaller than the region ({needed})")
        kwargs = dict(origin=origin, region=region)
        if pitches:
            kwargs['pitches'] = tuple(pitches)
        return kwargs

    def write_image(self, image, host, origin=None, region=None, pitches=None, blocking=True,
                    wait_for=None, queue=None):
        self._require_active('write an image')
        image.check_live()
        queue = self._queue(queue)
        host = np.ascontiguousarray(host)
        kwargs = self._image_region(image, host, origin, region, pitches)
        with self._backend(f"write to {image.label}"):
            event = cl.enqueue_copy(queue.handle, image.handle, host, is_blocking=blocking,
                                    wait_for=wait_for, **kwargs)
        return self._transfer_done(event, blocking)

    def read_image(self, image, host, origin=None, region=None, pitches=None, blocking=True,
                   wait_for=None, queue=None):
        self._require_active('read an image')
        image.check_live()
        queue = self._queue(queue)
        host = _writable_host(host)
        kwargs = self._image_region(image, host, origin, region, pitches)
        with self._backend(f"read from {image.label}"):
            event = cl.enqueue_copy(queue.handle, host, image.handle, is_blocking=blocking,
                                    wait_for=wait_for, **kwargs)
        return self._transfer_done(event, blocking)

    @contextlib.contextmanager
    def map(self, buffer, mode='read_write', offset=0, shape=None, dtype=np.float32,
            queue=None):
        """Map ``buffer`` into host memory for the duration of the ``with`` block.

        The view is valid only inside the block. Unmapping on exit waits for the
        unmap to complete, so later device commands see host writes.
        """
        self._require_active('map a buffer')
        buffer.check_live()
        queue = self._queue(queue)
        if mode not in MAP_MODES:
            raise ValueError(f"Unknown map mode '{mode}', expected one of {sorted(MAP_MODES)}")
        if buffer.mapped:
            raise MapStateError(f"{buffer.label} is already mapped")

        dtype = np.dtype(dtype)
        if shape is None:
            shape = ((buffer.size - offset) // dtype.itemsize,)
        elif isinstance(shape, int):
            shape = (shape,)
        nbytes = int(np.prod(shape)) * dtype.itemsize
        if offset < 0 or nbytes <= 0 or offset + nbytes > buffer.size:
            raise InvalidRegionError(
                f"Mapping {nbytes} bytes at offset {offset} exceeds "
                f"{buffer.label} ({buffer.size} bytes)")

        with self._backend(f"mapping {buffer.label}"):
            view, _ = cl.enqueue_map_buffer(queue.handle, buffer.handle, MAP_MODES[mode],
                                            offset, shape, dtype, is_blocking=True)
        buffer.mapped = True
        try:
            yield view
        finally:
            try:
                with self._backend(f"unmapping {buffer.label}"):
                    view.base.release(queue.handle)
                    queue.handle.finish()
            finally:
                buffer.mapped = False

    @contextlib.contextmanager
    def map_svm(self, svm, mode='read_write', queue=None):
        """Map an SVM allocation for host access; yields ``svm.array``."""
        self._require_active('map shared virtual memory')
        svm.check_live()
        queue = self._queue(queue)
        if mode not in MAP_MODES:
            raise ValueError(f"Unknown map mode '{mode}', expected one of {sorted(MAP_MODES)}")
        if svm.mapped:
            raise MapStateError(f"{svm.label} is already mapped")

        with self._backend(f"mapping {svm.label}"):
            mapping = svm.kernel_arg().map(queue.handle, flags=MAP_MODES[mode],
                                           is_blocking=True)
        svm.mapped = True
        try:
            yield svm.handle
        finally:
            try:
                with self._backend(f"unmapping {svm.label}"):
                    mapping.release()
                    queue.handle.finish()
            finally:
                svm.mapped = False

    # =========================================================================
    # RELEASE
    # =========================================================================

    def _forget(self, resource):
        for tracked in (self._memory, self._kernels, self._programs, self._queues):
            for i, item in enumerate(tracked):
                if item is resource:
                    del tracked[i]
                    return

    def release(self, resource):
        """Release one resource now. Dependents must have been released first."""
        if self.state is SessionState.RELEASED:
            raise SessionStateError("Cannot release resources of a released session")
        resource.release()
        self._forget(resource)
        if resource is self.context:
            self.state = SessionState.RELEASED

    def _release_all(self, best_effort):
        first_error = None
        sub_buffers = [m for m in self._memory if isinstance(m, BufferResource) and m.is_sub_buffer]
        others = [m for m in self._memory if not any(m is s for s in sub_buffers)]
        order = (sub_buffers + others + list(self._kernels) + list(self._programs)
                 + list(self._queues))
        if self.context is not None:
            order.append(self.context)

        for resource in order:
            if resource.released:
                continue
            try:
                resource.release()
            except Exception as e:
                if best_effort:
                    logger.warning("%s: could not release %r: %s", self.name, resource, e)
                elif first_error is None:
                    first_error = e
            self._forget(resource)
        return first_error

    def close(self):
        """Drain all queues and release every resource in dependency order.

        A session that is already released is left alone. In the FAILED state
        cleanup is best effort and problems are logged instead of raised.
        """
        if self.state is SessionState.RELEASED:
            return
        best_effort = self.state is SessionState.FAILED
        first_error = None

        for queue in self._queues:
            if queue.released:
                continue
            try:
                queue.finish()
            except cl.Error as e:
                if best_effort:
                    logger.warning("%s: draining %r failed: %s", self.name, queue, e)
                elif first_error is None:
                    first_error = KernelExecutionError("Draining a queue failed",
                                                       backend_status(e))

        release_error = self._release_all(best_effort)
        first_error = first_error or release_error
        self._outstanding = []
        self.queue = None
        self.state = SessionState.RELEASED
        logger.debug("%s: released", self.name)
        if first_error is not None:
            raise first_error
