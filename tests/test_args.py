import numpy as np
import pyopencl as cl
import pytest

from cl_args import KernelArgs, check_work_size, round_up, scalar_size
from cl_errors import ArgumentBindingError, InvalidWorkSizeError, ResourceReleasedError
from cl_resources import ArgInfo, BufferResource, ContextResource, KernelResource

AQ = cl.kernel_arg_address_qualifier
ACC = cl.kernel_arg_access_qualifier


class FakeHandle:
    def release(self):
        pass


def arg(name, address, type_name):
    return ArgInfo(name, address, ACC.NONE, 0, type_name)


@pytest.fixture
def context():
    return ContextResource(FakeHandle(), devices=[])


@pytest.fixture
def buffer(context):
    return BufferResource(FakeHandle(), context, 64, 'read_write', label='buf')


@pytest.fixture
def reduce_kernel(context):
    info = [
        arg('input', AQ.GLOBAL, 'float*'),
        arg('scratch', AQ.LOCAL, 'float*'),
        arg('n', AQ.PRIVATE, 'int'),
        arg('partial', AQ.GLOBAL, 'float*'),
    ]
    return KernelResource(FakeHandle(), context, 'reduce', 4, info)


@pytest.fixture
def untyped_kernel(context):
    return KernelResource(FakeHandle(), context, 'untyped', 2)


def test_scalar_size():
    assert scalar_size('int') == 4
    assert scalar_size('unsigned short') == 2
    assert scalar_size('float4') == 16
    assert scalar_size('int3') == 16
    assert scalar_size('double2') == 16
    assert scalar_size('my_struct') is None


def test_full_binding(reduce_kernel, buffer):
    args = KernelArgs(reduce_kernel)
    args.buffer(0, buffer).local(1, 512).scalar(2, np.int32(100)).buffer(3, buffer)
    values = args.backend_values()
    assert values[0] is buffer.handle
    assert isinstance(values[1], cl.LocalMemory)
    assert values[2] == 100


def test_bind_positional(reduce_kernel, buffer):
    args = KernelArgs(reduce_kernel).bind(buffer, cl.LocalMemory(64), np.int32(1), buffer)
    assert args.missing() == []


def test_unbound_slot(reduce_kernel, buffer):
    args = KernelArgs(reduce_kernel).bind(buffer, cl.LocalMemory(64))
    assert args.missing() == [2, 3]
    with pytest.raises(ArgumentBindingError, match='unbound'):
        args.validate()


def test_index_out_of_range(reduce_kernel, buffer):
    with pytest.raises(ArgumentBindingError):
        KernelArgs(reduce_kernel).buffer(4, buffer)


def test_too_many_values(untyped_kernel, buffer):
    with pytest.raises(ArgumentBindingError):
        KernelArgs(untyped_kernel).bind(buffer, buffer, buffer)


def test_scalar_size_mismatch(reduce_kernel):
    with pytest.raises(ArgumentBindingError, match='expected 4 bytes'):
        KernelArgs(reduce_kernel).scalar(2, np.int64(1))


def test_python_int_rejected(untyped_kernel):
    with pytest.raises(ArgumentBindingError, match='sized numpy'):
        KernelArgs(untyped_kernel).scalar(0, 7)


def test_local_slot_needs_size(reduce_kernel, buffer):
    with pytest.raises(ArgumentBindingError, match='__local'):
        KernelArgs(reduce_kernel).set(1, buffer)


def test_global_slot_needs_buffer(reduce_kernel):
    with pytest.raises(ArgumentBindingError, match='expected a buffer'):
        KernelArgs(reduce_kernel).scalar(0, np.float32(1))


def test_scalar_slot_rejects_buffer(reduce_kernel, buffer):
    with pytest.raises(ArgumentBindingError, match='by-value'):
        KernelArgs(reduce_kernel).set(2, buffer)


def test_released_buffer_fails_validation(untyped_kernel, buffer, context):
    other = BufferResource(FakeHandle(), context, 64, 'read_write')
    args = KernelArgs(untyped_kernel).bind(buffer, other)
    other.release()
    with pytest.raises(ResourceReleasedError):
        args.validate()


def test_work_size_normalized():
    assert check_work_size(16) == ((16,), None)
    assert check_work_size((8, 8), (4, 2)) == ((8, 8), (4, 2))


def test_local_must_divide_global():
    with pytest.raises(InvalidWorkSizeError, match='evenly divide'):
        check_work_size(100, 7)


def test_dimension_mismatch():
    with pytest.raises(InvalidWorkSizeError):
        check_work_size((8, 8), 4)


def test_too_many_dimensions():
    with pytest.raises(InvalidWorkSizeError):
        check_work_size((2, 2, 2, 2))


def test_non_positive_sizes():
    with pytest.raises(InvalidWorkSizeError):
        check_work_size(0)
    with pytest.raises(InvalidWorkSizeError):
        check_work_size(8, -2)


def test_device_limits():
    with pytest.raises(InvalidWorkSizeError, match='exceeds the device maximum'):
        check_work_size(1024, 512, max_work_group_size=256)
    with pytest.raises(InvalidWorkSizeError):
        check_work_size((64, 64), (64, 2), max_work_group_size=1024,
                        max_work_item_sizes=(32, 32, 32))


def test_device_dimensions():
    with pytest.raises(InvalidWorkSizeError):
        check_work_size((4, 4, 4), max_work_item_sizes=(64, 64))


def test_round_up():
    assert round_up(3, 512) == 513
    assert round_up(16, 64) == 64
    assert round_up(5, 1) == 5
