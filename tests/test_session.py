import time
import warnings

import numpy as np
import pyopencl as cl
import pytest

import cl_devices
from cl_config import DeviceSelector
from cl_errors import (
    ArgumentBindingError, CompileError, DoubleReleaseError, EntryPointNotFoundError,
    InvalidRegionError, InvalidWorkSizeError, KernelExecutionError, MapStateError,
    NoMatchingDeviceError, ResourceReleasedError, ResourceStillInUseError, SessionStateError,
    UnsupportedFeatureError,
)
from cl_profiling import ExecutionStatistics, duration_ms
from cl_session import ComputeSession, SessionState

SCALE_SOURCE = """
__kernel void scale(__global float *data, const float factor)
{
    int gid = get_global_id(0);
    data[gid] = data[gid] * factor;
}
"""

TWO_KERNELS = """
__kernel void first(__global float *a) { a[get_global_id(0)] = 1.0f; }
__kernel void second(__global float *a) { a[get_global_id(0)] = 2.0f; }
"""


def test_states_through_a_run(selector):
    session = ComputeSession(selector)
    assert session.state is SessionState.UNINITIALIZED
    session.discover()
    assert session.state is SessionState.DISCOVERED
    session.acquire()
    assert session.state is SessionState.ACQUIRED

    kernel = session.build(SCALE_SOURCE, 'scale')
    assert session.state is SessionState.BUILT
    data = np.ones(16, dtype=np.float32)
    mem = session.allocate(host=data)
    assert session.state is SessionState.ALLOCATED
    session.dispatch(kernel, [mem, np.float32(3)], 16)
    assert session.state is SessionState.DISPATCHED
    session.await_all()
    assert session.state is SessionState.COMPLETED

    session.close()
    assert session.state is SessionState.RELEASED
    with pytest.raises(SessionStateError):
        session.allocate(16)


def test_rediscovery_is_idempotent(selector):
    session = ComputeSession(selector)
    first = session.discover()
    second = session.discover()
    assert first == second
    session.close()


def test_discovery_failure_fails_session(selector):
    session = ComputeSession(DeviceSelector(selector.platform_index + 100, 'all', 0))
    with pytest.raises(NoMatchingDeviceError):
        session.discover()
    assert session.state is SessionState.FAILED
    with pytest.raises(SessionStateError):
        session.acquire()
    session.close()


def test_write_read_round_trip(session):
    data = np.arange(1024, dtype=np.float32)
    mem = session.allocate(data.nbytes)
    session.write(mem, data)
    out = np.empty_like(data)
    session.read(mem, out)
    np.testing.assert_array_equal(out, data)


def test_read_at_offset(session):
    data = np.arange(16, dtype=np.int32)
    mem = session.allocate(host=data)
    out = np.empty(4, dtype=np.int32)
    session.read(mem, out, offset=8 * 4)
    np.testing.assert_array_equal(out, [8, 9, 10, 11])


def test_out_of_bounds_transfer(session):
    mem = session.allocate(16)
    with pytest.raises(InvalidRegionError):
        session.write(mem, np.zeros(8, dtype=np.float32))
    with pytest.raises(InvalidRegionError):
        session.read(mem, np.zeros(2, dtype=np.float32), offset=12)
    # validation errors leave the session usable
    assert session.state is SessionState.ALLOCATED


def test_non_blocking_transfer_returns_event(session):
    data = np.arange(64, dtype=np.float32)
    mem = session.allocate(data.nbytes)
    event = session.write(mem, data, blocking=False)
    out = np.empty_like(data)
    read_event = session.read(mem, out, blocking=False, wait_for=[event])
    session.await_all()
    assert read_event.command_execution_status == cl.command_execution_status.COMPLETE
    np.testing.assert_array_equal(out, data)


def test_rect_round_trip(session):
    itemsize = 4
    rows, cols = 6, 8
    full = np.zeros((rows, cols), dtype=np.float32)
    mem = session.allocate(host=full)

    block = np.arange(12, dtype=np.float32).reshape(3, 4)
    row_pitch = cols * itemsize
    session.write_rect(mem, block, buffer_origin=(2 * itemsize, 1), host_origin=(0, 0),
                       region=(4 * itemsize, 3), buffer_pitches=(row_pitch,))

    back = np.zeros_like(block)
    session.read_rect(mem, back, buffer_origin=(2 * itemsize, 1), host_origin=(0, 0),
                      region=(4 * itemsize, 3), buffer_pitches=(row_pitch,))
    np.testing.assert_array_equal(back, block)

    whole = np.empty_like(full)
    session.read(mem, whole)
    expected = np.zeros_like(full)
    expected[1:4, 2:6] = block
    np.testing.assert_array_equal(whole, expected)


def test_rect_outside_buffer(session):
    mem = session.allocate(4 * 16)
    with pytest.raises(InvalidRegionError):
        session.read_rect(mem, np.zeros(16, dtype=np.float32), buffer_origin=(0, 3),
                          host_origin=(0, 0), region=(16, 2), buffer_pitches=(16,))


def test_map_round_trip(session):
    data = np.arange(10, dtype=np.float32)
    mem = session.allocate(host=data)
    with session.map(mem, 'read_write', shape=10) as view:
        np.testing.assert_array_equal(view, data)
        view[3] = 42
    out = np.empty_like(data)
    session.read(mem, out)
    assert out[3] == 42
    assert not mem.mapped


def test_nested_map_rejected(session):
    mem = session.allocate(64)
    with session.map(mem, 'write'):
        with pytest.raises(MapStateError):
            with session.map(mem, 'read'):
                pass
        with pytest.raises(ResourceStillInUseError):
            session.release(mem)
    session.release(mem)


def test_dispatch_result(session):
    data = np.arange(32, dtype=np.float32)
    kernel = session.build(SCALE_SOURCE, 'scale')
    mem = session.allocate(host=data)
    session.dispatch(kernel, [mem, np.float32(2)], 32, 8)
    out = np.empty_like(data)
    session.read(mem, out)
    np.testing.assert_array_equal(out, data * 2)


def test_non_dividing_local_size(session):
    kernel = session.build(SCALE_SOURCE, 'scale')
    mem = session.allocate(100 * 4)
    with pytest.raises(InvalidWorkSizeError):
        session.dispatch(kernel, [mem, np.float32(1)], 100, 7)
    assert session.state is SessionState.ALLOCATED


def test_local_size_over_device_limit(session):
    kernel = session.build(SCALE_SOURCE, 'scale')
    limit = session.device.max_work_group_size
    mem = session.allocate(limit * 2 * 4)
    with pytest.raises(InvalidWorkSizeError):
        session.dispatch(kernel, [mem, np.float32(1)], limit * 2, limit * 2)


def test_unbound_argument(session):
    kernel = session.build(SCALE_SOURCE, 'scale')
    mem = session.allocate(64)
    with pytest.raises(ArgumentBindingError):
        session.dispatch(kernel, session.new_args(kernel).buffer(0, mem), 16)


def test_wrong_scalar_width(session):
    kernel = session.build(SCALE_SOURCE, 'scale')
    mem = session.allocate(64)
    with pytest.raises(ArgumentBindingError):
        session.dispatch(kernel, [mem, np.float64(1)], 16)


def test_compile_error_has_log(session):
    with pytest.raises(CompileError) as info:
        session.build('__kernel void broken(__global float *a) { a[0] = ; }', 'broken')
    assert info.value.log
    assert session.state is SessionState.FAILED
    with pytest.raises(SessionStateError):
        session.allocate(16)


class ProgramCreationFailure(cl.Error):
    code = cl.status_code.OUT_OF_HOST_MEMORY

    def __str__(self):
        return 'clCreateProgramWithSource failed: OUT_OF_HOST_MEMORY'


def test_program_creation_failure_fails_session(session, monkeypatch):
    def failing_program(context, source):
        raise ProgramCreationFailure()

    monkeypatch.setattr(cl, 'Program', failing_program)
    with pytest.raises(CompileError) as info:
        session.compile(SCALE_SOURCE)
    assert 'OUT_OF_HOST_MEMORY' in info.value.log
    assert session.state is SessionState.FAILED


def test_missing_entry_point(session):
    with pytest.raises(EntryPointNotFoundError) as info:
        session.build(SCALE_SOURCE, 'nope')
    assert 'scale' in info.value.available


def test_program_released_after_build(session):
    kernel = session.build(SCALE_SOURCE, 'scale')
    assert kernel.num_args == 2
    assert kernel.arg_info is not None
    assert kernel.arg_info[1].type_name == 'float'


def test_several_kernels_from_one_program(session):
    program = session.compile(TWO_KERNELS)
    assert sorted(program.kernel_names) == ['first', 'second']
    first = session.kernel(program, 'first')
    second = session.kernel(program, 'second')
    session.release(program)

    mem = session.allocate(16)
    out = np.empty(4, dtype=np.float32)
    session.dispatch(first, [mem], 4)
    session.read(mem, out)
    assert list(out) == [1, 1, 1, 1]
    session.dispatch(second, [mem], 4)
    session.read(mem, out)
    assert list(out) == [2, 2, 2, 2]


def test_release_order_enforced(session):
    mem = session.allocate(64)
    with pytest.raises(ResourceStillInUseError):
        session.release(session.context)
    assert session.state is not SessionState.RELEASED

    session.release(mem)
    for queue in list(session._queues):
        session.release(queue)
    session.release(session.context)
    assert session.state is SessionState.RELEASED


def test_double_release(session):
    mem = session.allocate(64)
    session.release(mem)
    with pytest.raises(DoubleReleaseError):
        session.release(mem)
    with pytest.raises(ResourceReleasedError):
        session.write(mem, np.zeros(4, dtype=np.float32))


def test_sub_buffer_bounds(session):
    mem = session.allocate(64)
    with pytest.raises(InvalidRegionError):
        session.sub_buffer(mem, 0, 128)
    with pytest.raises(InvalidRegionError):
        session.sub_buffer(mem, -4, 8)


def test_sub_buffer_alignment(session):
    align = session.device.mem_base_addr_align // 8
    if align <= 4:
        pytest.skip('device accepts 4-byte aligned sub-buffers')
    mem = session.allocate(align * 4)
    with pytest.raises(InvalidRegionError, match='alignment'):
        session.sub_buffer(mem, 4, 8)


def test_aligned_sub_buffer_shares_storage(session):
    align = max(session.device.mem_base_addr_align // 8, 4)
    data = np.arange(align // 4 * 2, dtype=np.float32)
    mem = session.allocate(host=data)
    sub = session.sub_buffer(mem, align, 16)
    session.write(sub, np.full(4, -1, dtype=np.float32))
    out = np.empty_like(data)
    session.read(mem, out)
    start = align // 4
    np.testing.assert_array_equal(out[start:start + 4], [-1, -1, -1, -1])

    with pytest.raises(ResourceStillInUseError):
        session.release(mem)
    session.release(sub)
    session.release(mem)


def test_user_event_gates_read(session):
    data = np.arange(8, dtype=np.float32)
    mem = session.allocate(host=data)
    gate = session.user_event()
    out = np.zeros_like(data)
    event = session.read(mem, out, blocking=False, wait_for=[gate])
    try:
        time.sleep(0.05)
        assert event.command_execution_status != cl.command_execution_status.COMPLETE
    finally:
        session.signal(gate)
    session.await_all([event])
    np.testing.assert_array_equal(out, data)


def test_failed_event_reports_its_own_status(session):
    gate = session.user_event()
    session.signal(gate, cl.status_code.OUT_OF_RESOURCES)
    with pytest.raises(KernelExecutionError) as info:
        session.await_all([gate])
    assert info.value.status == cl.status_code.OUT_OF_RESOURCES
    assert session.state is SessionState.FAILED


def test_completion_callback(session):
    fired = []
    mem = session.allocate(64)
    event = session.write(mem, np.zeros(16, dtype=np.float32), blocking=False)
    session.on_complete(event, lambda evt, status: fired.append(status))
    session.await_all()
    deadline = time.time() + 5
    while not fired and time.time() < deadline:
        time.sleep(0.01)
    assert fired == [cl.command_execution_status.COMPLETE]


def test_close_releases_everything_and_runs_callbacks(selector):
    released = []
    with ComputeSession(selector) as session:
        kernel = session.build(SCALE_SOURCE, 'scale')
        parent = session.allocate(1024)
        sub = session.sub_buffer(parent, 0, 512)
        parent.on_release(lambda mem: released.append('parent'))
        sub.on_release(lambda mem: released.append('sub'))
        context = session.context
    assert released == ['sub', 'parent']
    assert kernel.released and context.released
    assert session.state is SessionState.RELEASED


def test_close_after_failure_is_best_effort(selector):
    session = ComputeSession(selector).open()
    session.allocate(64)
    with pytest.raises(CompileError):
        session.compile('not opencl at all')
    session.close()
    assert session.state is SessionState.RELEASED


def test_profiling_events(profiling_session):
    session = profiling_session
    kernel = session.build(SCALE_SOURCE, 'scale')
    mem = session.allocate(host=np.ones(1024, dtype=np.float32))
    event = session.dispatch(kernel, [mem, np.float32(2)], 1024)
    session.await_all()

    stats = ExecutionStatistics()
    stats.add('scale', event)
    (name, timing), = stats.normalized()
    assert name == 'scale'
    assert timing.queued == 0
    assert timing.queued <= timing.submit <= timing.start <= timing.end
    assert duration_ms(event) >= 0
    assert 'Event scale:' in stats.report()


def test_image_round_trip(session):
    if not session.device.image_support:
        pytest.skip('device has no image support')
    pixels = np.arange(8 * 4 * 4, dtype=np.uint8).reshape(4, 8, 4)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        image = session.allocate_image((8, 4), host=pixels)
    assert not [w for w in caught if 'Image constructor' in str(w.message)]
    out = np.zeros_like(pixels)
    session.read_image(image, out)
    np.testing.assert_array_equal(out, pixels)

    with pytest.raises(InvalidRegionError):
        session.read_image(image, out, origin=(4, 0), region=(8, 4))


def test_svm_round_trip(svm_session):
    session = svm_session
    kernel = session.build(SCALE_SOURCE, 'scale')
    svm = session.allocate_svm(16, np.float32, label='svm')
    assert svm.size == 64
    with session.map_svm(svm, 'write') as view:
        view[:] = np.arange(16, dtype=np.float32)
    session.dispatch(kernel, [svm, np.float32(3)], 16)
    session.await_all()
    with session.map_svm(svm, 'read') as view:
        np.testing.assert_array_equal(view, np.arange(16, dtype=np.float32) * 3)


def test_svm_map_and_release_rules(svm_session):
    session = svm_session
    svm = session.allocate_svm((2, 4), np.int32)
    with session.map_svm(svm):
        with pytest.raises(MapStateError):
            with session.map_svm(svm):
                pass
        with pytest.raises(ResourceStillInUseError):
            session.release(svm)
    session.release(svm)
    with pytest.raises(ResourceReleasedError):
        svm.array
    with pytest.raises(DoubleReleaseError):
        session.release(svm)


def test_close_releases_svm_before_context(svm_session):
    released = []
    svm = svm_session.allocate_svm(8)
    svm.on_release(lambda mem: released.append(svm_session.context.released))
    context = svm_session.context
    svm_session.close()
    assert released == [False]
    assert svm.released and context.released


def test_svm_needs_device_support(session, monkeypatch):
    monkeypatch.setattr(cl_devices, 'supports_svm', lambda device: False)
    with pytest.raises(UnsupportedFeatureError):
        session.allocate_svm(8)
    assert session.state is not SessionState.FAILED
