"""
Multiple Devices
================

Opens one compute session per device of the selected platform, enqueues
the same kernel on every device, waits for all of them and prints the
per-device execution time taken from profiling events.

Each work-item sums the whole input, so every output element equals
sum(input).

Usage:
    python sample_multi_device.py [platform [device_type]]

    CL_SAMPLES_MULTI_N=10000   number of elements (default 10,000)
"""

import contextlib
import os
import sys
import time

import numpy as np

import cl_devices
from cl_config import selector_from_args, configure_logging, QueueOptions
from cl_profiling import duration_ms
from cl_session import ComputeSession

KERNEL_SOURCE = """
__kernel void sampleKernel(__global const float *input,
                           __global float *output,
                           int size)
{
    int gid = get_global_id(0);
    float sum = 0;
    for (int i = 0; i < size; i++)
    {
        sum += input[i];
    }
    output[gid] = sum;
}
"""


def open_sessions(stack, selector):
    """One profiling session per device matching ``selector``'s platform and type."""
    sessions = []
    for index, (_, device) in enumerate(cl_devices.discover_all(selector)):
        session = ComputeSession(name=f"device{index}",
                                 queue_options=QueueOptions(profiling=True))
        stack.callback(session.close)
        session.acquire(device)
        sessions.append(session)
    return sessions


def run_on_devices(sessions, data):
    """Dispatch on every session, then wait for all. Returns ``[(session, ms, output)]``."""
    data = np.ascontiguousarray(data, dtype=np.float32)
    pending = []
    print("Enqueueing kernels")
    for session in sessions:
        kernel = session.build(KERNEL_SOURCE, 'sampleKernel')
        input_mem = session.allocate(host=data, access='read_only', label='input')
        output_mem = session.allocate(data.nbytes, access='read_write', label='output')
        event = session.dispatch(kernel, [input_mem, output_mem, np.int32(data.size)],
                                 data.size)
        pending.append((session, event, output_mem))

    print("Waiting for kernels")
    results = []
    for session, event, output_mem in pending:
        session.await_all([event])
        output = np.empty_like(data)
        session.read(output_mem, output)
        results.append((session, duration_ms(event), output))
    print("Waiting for kernels DONE")
    return results


def main():
    configure_logging()
    selector = selector_from_args()
    n = int(os.environ.get('CL_SAMPLES_MULTI_N', 10000))

    print("=" * 70)
    print("MULTIPLE DEVICES")
    print("=" * 70)

    data = np.arange(n, dtype=np.float32)
    expected = float(data.astype(np.float64).sum())

    with contextlib.ExitStack() as stack:
        sessions = open_sessions(stack, selector)
        for session in sessions:
            print(f"✓ {session.describe()}")

        before = time.perf_counter()
        results = run_on_devices(sessions, data)
        total_ms = (time.perf_counter() - before) * 1000

    passed = True
    for session, ms, output in results:
        print(f"Duration on {session.name}: {ms:.3f} ms")
        passed &= bool(np.allclose(output, expected, rtol=1e-4))
    print(f"Total duration: {total_ms:.3f} ms")
    print(', '.join(f"{v:g}" for v in results[0][2][:10]) + ', ...')

    print("✓ PASSED" if passed else "❌ FAILED")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
