"""
Parallel Reduction
==================

Sums 100,000 floats in two phases. On the device, each of 64 work-groups
reduces its share of the input in local memory and writes one partial
sum. On the host, the 64 partial sums are added with Kahan summation.

    sum(0 .. 99999) = 4999950000

Usage:
    python sample_reduction.py [platform [device_type [device]]]
"""

import sys

import numpy as np

from cl_args import KernelArgs
from cl_config import selector_from_args, configure_logging, load_kernel_source
from cl_session import ComputeSession

N = 100000
LOCAL_WORK_SIZE = 128
NUM_WORK_GROUPS = 64


def kahan_sum(values):
    """Compensated (Kahan-Babuska/Neumaier) summation in double precision."""
    total = 0.0
    compensation = 0.0
    for value in values:
        value = float(value)
        t = total + value
        # recover the low-order bits of whichever operand was smaller
        if abs(total) >= abs(value):
            compensation += (total - t) + value
        else:
            compensation += (value - t) + total
        total = t
    return total + compensation


def fit_local_size(session, requested):
    """Largest power of two not above ``requested`` and the device limit."""
    limit = min(requested, session.device.max_work_group_size,
                session.device.max_work_item_sizes[0])
    size = 1
    while size * 2 <= limit:
        size *= 2
    return size


def reduce_sum(session, data, local_size=LOCAL_WORK_SIZE, num_groups=NUM_WORK_GROUPS):
    """Sum ``data`` on the device. Returns ``(total, partial_sums)``."""
    data = np.ascontiguousarray(data, dtype=np.float32)
    local_size = fit_local_size(session, local_size)

    kernel = session.build(load_kernel_source('reduction'), 'reduce')
    input_mem = session.allocate(host=data, access='read_only', label='input')
    partial = np.zeros(num_groups, dtype=np.float32)
    partial_mem = session.allocate(partial.nbytes, access='write_only', label='partial')

    args = KernelArgs(kernel)
    args.buffer(0, input_mem)
    args.local(1, local_size * np.dtype(np.float32).itemsize)
    args.scalar(2, np.int32(data.size))
    args.buffer(3, partial_mem)

    session.dispatch(kernel, args, num_groups * local_size, local_size)
    session.read(partial_mem, partial)
    session.await_all()
    return kahan_sum(partial), partial


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("PARALLEL REDUCTION")
    print("=" * 70)

    data = np.arange(N, dtype=np.float32)

    with ComputeSession(selector, name='reduction') as session:
        print(f"✓ Using {session.describe()}")
        result_gpu, partial = reduce_sum(session, data)

    result_cpu = kahan_sum(data)
    print(f"  Work-groups:  {partial.size}")
    print(f"  Device sum:   {result_gpu:.1f}")
    print(f"  Host sum:     {result_cpu:.1f}")

    passed = abs(result_gpu - result_cpu) <= 1e-5 * abs(result_cpu)
    print("✓ PASSED" if passed else "❌ FAILED")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
