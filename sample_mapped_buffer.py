"""
Mapped Buffer
=============

Creates a buffer that aliases a host array, maps it into host memory,
changes elements 4, 5 and 6 through the mapping, unmaps it and runs a
multiplication kernel that sees the changed values.

Usage:
    python sample_mapped_buffer.py [platform [device_type [device]]]
"""

import sys

import numpy as np

from cl_config import selector_from_args, configure_logging
from cl_session import ComputeSession

KERNEL_SOURCE = """
__kernel void sampleKernel(__global const float *a,
                           __global const float *b,
                           __global float *c)
{
    int gid = get_global_id(0);
    c[gid] = a[gid] * b[gid];
}
"""

# Elements changed through the mapped view
MAPPED_UPDATES = {4: 40.0, 5: 50.0, 6: 60.0}


def mapped_multiply(session, a, b, updates=MAPPED_UPDATES):
    """Apply ``updates`` to ``a`` through a mapping, then return ``a * b`` from the device."""
    kernel = session.build(KERNEL_SOURCE, 'sampleKernel')
    a_mem = session.allocate(host=a, access='read_write', policy='use', label='a')
    b_mem = session.allocate(host=b, access='read_only', policy='copy', label='b')
    c_mem = session.allocate(a.nbytes, access='read_write', label='c')

    with session.map(a_mem, 'write', shape=a.size, dtype=a.dtype) as view:
        for index, value in updates.items():
            view[index] = value

    session.dispatch(kernel, [a_mem, b_mem, c_mem], a.size)
    result = np.empty_like(a)
    session.read(c_mem, result)
    session.await_all()
    return result


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("MAPPED BUFFER")
    print("=" * 70)

    n = 10
    a = np.arange(n, dtype=np.float32)
    b = np.arange(n, dtype=np.float32)

    with ComputeSession(selector, name='mapped-buffer') as session:
        print(f"✓ Using {session.describe()}")
        result = mapped_multiply(session, a, b)

    # Apply the mapped changes on the host side for verification
    reference = np.arange(n, dtype=np.float32)
    for index, value in MAPPED_UPDATES.items():
        reference[index] = value
    expected = reference * b

    passed = np.allclose(result, expected, rtol=1e-7, atol=0)
    print(f"Test {'PASSED' if passed else 'FAILED'}")
    print(f"Result: {result.tolist()}")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
