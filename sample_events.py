"""
Events and Profiling
====================

Enqueues two independent kernels (vector add and vector multiply) on a
profiling-enabled queue, waits for their events, reads both results with
non-blocking transfers and prints the queued/submit/start/end timestamps
of every command relative to the first one queued.

Usage:
    python sample_events.py [platform [device_type [device]]]

    CL_SAMPLES_EVENTS_N=1000000   number of elements (default 1,000,000)
"""

import os
import sys

import numpy as np

from cl_config import selector_from_args, configure_logging, QueueOptions
from cl_profiling import ExecutionStatistics
from cl_session import ComputeSession

ADD_SOURCE = """
__kernel void vectorAdd(__global const float *a,
                        __global const float *b,
                        __global float *c)
{
    int gid = get_global_id(0);
    c[gid] = a[gid] + b[gid];
}
"""

MUL_SOURCE = """
__kernel void vectorMul(__global const float *a,
                        __global const float *b,
                        __global float *c)
{
    int gid = get_global_id(0);
    c[gid] = a[gid] * b[gid];
}
"""


def run_events(session, a, b, stats=None):
    """Return ``(a + b, a * b)`` and record every command in ``stats``."""
    n = a.size
    add = session.build(ADD_SOURCE, 'vectorAdd')
    mul = session.build(MUL_SOURCE, 'vectorMul')

    a_mem = session.allocate(host=a, access='read_only', label='a')
    b_mem = session.allocate(host=b, access='read_only', label='b')
    sum_mem = session.allocate(a.nbytes, access='write_only', label='sum')
    prod_mem = session.allocate(a.nbytes, access='write_only', label='product')

    print("Enqueueing kernels...")
    kernel_event0 = session.dispatch(add, [a_mem, b_mem, sum_mem], n)
    kernel_event1 = session.dispatch(mul, [a_mem, b_mem, prod_mem], n)
    print("Waiting for events...")
    session.await_all([kernel_event0, kernel_event1])

    print("Enqueueing output reads...")
    total = np.empty_like(a)
    product = np.empty_like(a)
    read_event0 = session.read(sum_mem, total, blocking=False)
    read_event1 = session.read(prod_mem, product, blocking=False)
    print("Waiting for events...")
    session.await_all([read_event0, read_event1])

    if stats is not None:
        stats.add('kernel0', kernel_event0)
        stats.add('kernel1', kernel_event1)
        stats.add('  read0', read_event0)
        stats.add('  read1', read_event1)
    return total, product


def main():
    configure_logging()
    selector = selector_from_args()
    n = int(os.environ.get('CL_SAMPLES_EVENTS_N', 1000000))

    print("=" * 70)
    print("EVENTS AND PROFILING")
    print("=" * 70)

    a = np.arange(n, dtype=np.float32)
    b = np.arange(n, dtype=np.float32)
    stats = ExecutionStatistics()

    with ComputeSession(selector, QueueOptions(profiling=True), name='events') as session:
        print(f"✓ Using {session.describe()}")
        total, product = run_events(session, a, b, stats)

    stats.print()

    preview = ', '.join(f"{v:g}" for v in total[:10])
    print(f"Result: {preview}{' ...' if n > 10 else ''}")

    passed = np.allclose(total, a + b) and np.allclose(product, a * b)
    print("✓ PASSED" if passed else "❌ FAILED")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
