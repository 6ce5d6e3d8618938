"""
Vector Addition
===============

The smallest complete round trip through a compute session: select a
device, build one kernel, copy two input vectors to the device, add them
element by element, read the result back and release everything.

Usage:
    python sample_vector_add.py [platform [device_type [device]]]
"""

import sys

import numpy as np

from cl_config import selector_from_args, configure_logging
from cl_session import ComputeSession

KERNEL_SOURCE = """
__kernel void vectorAdd(__global const float *a,
                        __global const float *b,
                        __global float *c)
{
    int gid = get_global_id(0);
    c[gid] = a[gid] + b[gid];
}
"""


def vector_add(session, a, b):
    """Return ``a + b`` computed on the session's device."""
    a = np.ascontiguousarray(a, dtype=np.float32)
    b = np.ascontiguousarray(b, dtype=np.float32)
    if a.shape != b.shape:
        raise ValueError(f"Input shapes differ: {a.shape} vs {b.shape}")

    kernel = session.build(KERNEL_SOURCE, 'vectorAdd')
    a_mem = session.allocate(host=a, access='read_only', label='a')
    b_mem = session.allocate(host=b, access='read_only', label='b')
    c_mem = session.allocate(a.nbytes, access='write_only', label='c')

    session.dispatch(kernel, [a_mem, b_mem, c_mem], a.size)
    result = np.empty_like(a)
    session.read(c_mem, result)
    session.await_all()
    return result


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("VECTOR ADDITION")
    print("=" * 70)

    n = 4
    a = np.arange(n, dtype=np.float32)
    b = np.arange(n, dtype=np.float32)

    with ComputeSession(selector, name='vector-add') as session:
        print(f"✓ Using {session.describe()}")
        result = vector_add(session, a, b)

    expected = a + b
    print(f"  a      = {a}")
    print(f"  b      = {b}")
    print(f"  result = {result}")

    if not np.array_equal(result, expected):
        print(f"❌ Expected {expected}")
        return 1
    print("✓ PASSED")
    return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
