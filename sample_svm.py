"""
Shared Virtual Memory
=====================

OpenCL 2.0 shared virtual memory: the kernel first writes ``a * b`` into
an SVM allocation, the host maps it, reads the products and overwrites
every element ``i`` with ``i + i``, and a second dispatch reads the SVM
allocation for both inputs and writes ``(i + i) * (i + i)`` into an
ordinary buffer.

Only devices with coarse-grained SVM buffers qualify; the first such
device of the selected platform is used. The kernel itself is plain
OpenCL C: SVM pointers bind to ordinary __global pointer arguments.

Usage:
    python sample_svm.py [platform [device_type [device]]]
"""

import sys

import numpy as np

import cl_devices
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


def find_svm_device(selector):
    """First (platform, device) of the selected platform with SVM support, or None."""
    for platform, device in cl_devices.discover_all(selector):
        if cl_devices.supports_svm(device):
            print(f"  Using {device.name.strip()} ({device.version.strip()})")
            return platform, device
        print(f"  Skipping {device.name.strip()} ({device.version.strip()})")
    return None


def svm_multiply(session, a, b, log=print):
    """Run both passes; return (products seen through the mapping, final result)."""
    a = np.ascontiguousarray(a, dtype=np.float32)
    b = np.ascontiguousarray(b, dtype=np.float32)
    n = a.size
    freed = []

    kernel = session.build(KERNEL_SOURCE, 'sampleKernel')
    a_mem = session.allocate(host=a, access='read_only', label='a')
    b_mem = session.allocate(host=b, access='read_only', label='b')
    svm = session.allocate_svm(n, np.float32, label='svm')
    svm.on_release(lambda mem: freed.append(mem.label))

    session.dispatch(kernel, [a_mem, b_mem, svm], n)

    with session.map_svm(svm, 'read_write') as view:
        products = view.copy()
        for i in range(n):
            log(f"  At {i} got {view[i]}, setting {float(i + i)}")
            view[i] = i + i

    dst = session.allocate(a.nbytes, access='read_write', label='dst')
    session.dispatch(kernel, [svm, svm, dst], n)
    result = np.empty_like(a)
    session.read(dst, result)
    session.await_all()

    session.release(svm)
    log(f"  Release callback ran for {', '.join(freed)}")
    return products, result


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("SHARED VIRTUAL MEMORY")
    print("=" * 70)

    found = find_svm_device(selector)
    if found is None:
        print("❌ No device with shared virtual memory support found")
        return 1
    _, device = found

    n = 10
    a = np.arange(n, dtype=np.float32)
    b = np.arange(n, dtype=np.float32)

    session = ComputeSession(selector, name='svm')
    try:
        session.acquire(device)
        products, result = svm_multiply(session, a, b)
    finally:
        session.close()

    expected = (a + a) * (b + b)
    print(f"  products = {products}")
    print(f"  result   = {result}")

    if not np.allclose(products, a * b) or not np.allclose(result, expected):
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
