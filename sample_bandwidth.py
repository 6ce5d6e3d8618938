"""
Host to Device Bandwidth
========================

Measures how fast data moves from the host to a device buffer for every
combination of

    memory mode:  PAGEABLE  ordinary numpy array
                  PINNED    buffer allocated with 'alloc_host' and mapped
    access mode:  DIRECT    enqueue buffer writes
                  MAPPED    map the device buffer and copy into the mapping

Usage:
    python sample_bandwidth.py [platform [device_type [device]]]

    CL_SAMPLES_BANDWIDTH_MAX_EXP=22   largest transfer is 2**MAX_EXP bytes
    CL_SAMPLES_BANDWIDTH_ITER=100     copies per measurement
"""

import os
import sys
import time

import numpy as np

from cl_config import selector_from_args, configure_logging
from cl_session import ComputeSession

MEMORY_MODES = ('PAGEABLE', 'PINNED')
ACCESS_MODES = ('DIRECT', 'MAPPED')

MIN_EXPONENT = 10
MAX_EXPONENT = int(os.environ.get('CL_SAMPLES_BANDWIDTH_MAX_EXP', 22))
MEMCOPY_ITERATIONS = int(os.environ.get('CL_SAMPLES_BANDWIDTH_ITER', 100))


def compute_bandwidth(session, memory_size, memory_mode, access_mode,
                      iterations=MEMCOPY_ITERATIONS):
    """Copy ``memory_size`` bytes ``iterations`` times; returns MB/s."""
    pattern = (np.arange(memory_size) & 0xFF).astype(np.uint8)
    pinned = None
    if memory_mode == 'PINNED':
        pinned = session.allocate(memory_size, access='read_write', policy='alloc_host',
                                  label='pinned')
        with session.map(pinned, 'write', dtype=np.uint8) as view:
            view[:] = pattern
    device_data = session.allocate(memory_size, access='read_write', label='device')
    session.finish()

    start = time.perf_counter()
    if pinned is not None:
        with session.map(pinned, 'read', dtype=np.uint8) as host_data:
            _copy(session, device_data, host_data, access_mode, iterations)
    else:
        _copy(session, device_data, pattern, access_mode, iterations)
    duration = time.perf_counter() - start

    session.release(device_data)
    if pinned is not None:
        session.release(pinned)
    return (memory_size * iterations) / (duration * (1 << 20))


def _copy(session, device_data, host_data, access_mode, iterations):
    if access_mode == 'DIRECT':
        for _ in range(iterations):
            session.write(device_data, host_data, blocking=False)
        session.finish()
    else:
        with session.map(device_data, 'write', dtype=np.uint8) as mapped:
            for _ in range(iterations):
                mapped[:] = host_data


def run_test(session, memory_mode, access_mode, min_exp=MIN_EXPONENT, max_exp=MAX_EXPONENT,
             iterations=MEMCOPY_ITERATIONS):
    """Returns ``[(size_bytes, mb_per_s), ...]``."""
    results = []
    print("Running", end='', flush=True)
    for exponent in range(min_exp, max_exp + 1):
        print(".", end='', flush=True)
        size = 1 << exponent
        results.append((size, compute_bandwidth(session, size, memory_mode, access_mode,
                                                iterations)))
    print()
    return results


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("HOST TO DEVICE BANDWIDTH")
    print("=" * 70)

    with ComputeSession(selector, name='bandwidth') as session:
        print(f"✓ Using {session.describe()}")
        for memory_mode in MEMORY_MODES:
            for access_mode in ACCESS_MODES:
                results = run_test(session, memory_mode, access_mode)
                print(f"Bandwidths for {memory_mode} and {access_mode}")
                for size, bandwidth in results:
                    print(f"{size:10d} bytes : {bandwidth:10.3f} MB/s")
                print()
    return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
