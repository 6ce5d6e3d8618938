"""
Buffer Regions, User Events and Callbacks
=========================================

Adds two 4x4 arrays, then reads only the centre 2x2 block of the result
with a rectangular read. The read waits on a user event that another
thread signals after a short countdown. A completion callback prints the
region once the read finishes, and a release callback reports when the
result buffer is freed.

Expected region: [[10, 12], [18, 20]]

Usage:
    python sample_regions_callbacks.py [platform [device_type [device]]]
"""

import sys
import threading
import time

import numpy as np

from cl_config import selector_from_args, configure_logging
from cl_errors import status_name
from cl_session import ComputeSession

KERNEL_SOURCE = """
__kernel void sampleKernel(__global const float *a,
                           __global const float *b,
                           __global float *c)
{
    int gid = get_global_id(0);
    c[gid] = a[gid] + b[gid];
}
"""

SIZE_X = 4
SIZE_Y = 4
REGION_X = 2
REGION_Y = 2
REFERENCE = np.array([[10, 12], [18, 20]], dtype=np.float32)


def countdown_then_signal(session, user_event, seconds=3, delay=1.0):
    print("Waiting before setting event status to COMPLETE")
    for remaining in range(seconds, 0, -1):
        print(f"Seconds left: {remaining}")
        time.sleep(delay)
    print("Setting event status to COMPLETE")
    session.signal(user_event)


def region_read(session, countdown=3, delay=1.0, log=print):
    """Run the gated region read. Returns ``(region, callback_log)``."""
    itemsize = np.dtype(np.float32).itemsize
    n = SIZE_X * SIZE_Y
    a = np.arange(n, dtype=np.float32)
    b = np.arange(n, dtype=np.float32)
    calls = []

    kernel = session.build(KERNEL_SOURCE, 'sampleKernel')
    a_mem = session.allocate(host=a, access='read_only', label='a')
    b_mem = session.allocate(host=b, access='read_only', label='b')
    c_mem = session.allocate(a.nbytes, access='read_write', label='c')
    session.dispatch(kernel, [a_mem, b_mem, c_mem], n)

    region = np.zeros((REGION_Y, REGION_X), dtype=np.float32)
    user_event = session.user_event()

    log("Enqueue buffer region read, waiting for user event")
    read_event = session.read_rect(
        c_mem, region,
        buffer_origin=(1 * itemsize, 1, 0),
        host_origin=(0, 0, 0),
        region=(REGION_X * itemsize, REGION_Y, 1),
        buffer_pitches=(SIZE_X * itemsize, SIZE_X * SIZE_Y * itemsize),
        host_pitches=(REGION_X * itemsize, REGION_X * REGION_Y * itemsize),
        blocking=False, wait_for=[user_event])

    def on_read(event, status):
        name = status_name(status, execution=True)
        calls.append(('read', name))
        log(f"Event reached status {name}")
        log("Buffer region was read:")
        log(str(region))

    def on_release(mem):
        calls.append(('release', mem.label))
        log(f"Memory object {mem.label!r} was released")

    session.on_complete(read_event, on_read)
    c_mem.on_release(on_release)

    thread = threading.Thread(target=countdown_then_signal,
                              args=(session, user_event, countdown, delay))
    thread.start()
    try:
        session.await_all([read_event])
    finally:
        thread.join()

    session.finish()
    session.release(c_mem)
    return region, calls


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("BUFFER REGIONS, USER EVENTS AND CALLBACKS")
    print("=" * 70)

    with ComputeSession(selector, name='regions') as session:
        print(f"✓ Using {session.describe()}")
        region, _ = region_read(session)

    passed = np.array_equal(region, REFERENCE)
    print("✓ PASSED" if passed else f"❌ FAILED, expected {REFERENCE.tolist()}")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
