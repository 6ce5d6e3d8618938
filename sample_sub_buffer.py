"""
Sub-Buffers
===========

Creates a buffer holding [0, 1, ..., 7] and a sub-buffer covering four
elements starting at element 2. Reads the sub-buffer, overwrites it with
[-5, -4, -3, -2] and reads the full buffer again to show the change went
through to the parent:

    Read sub-array    : [2, 3, 4, 5]
    Modified sub-array: [-5, -4, -3, -2]
    Full result array : [0, 1, -5, -4, -3, -2, 6, 7]

Sub-buffer origins must be aligned to the device's base address
alignment. Devices that require more than 8 bytes cannot place a
sub-buffer at element 2; the sample then moves the window to the first
aligned element of a larger buffer.

Usage:
    python sample_sub_buffer.py [platform [device_type [device]]]
"""

import sys

import numpy as np

from cl_config import selector_from_args, configure_logging
from cl_session import ComputeSession

FULL_SIZE = 8
SUB_OFFSET = 2
SUB_SIZE = 4
SUB_VALUES = [-5, -4, -3, -2]


def aligned_element_offset(session, itemsize=4):
    """Smallest element offset a sub-buffer can start at on this device."""
    align = max(session.device.mem_base_addr_align // 8, itemsize)
    return align // itemsize


def sub_buffer_scenario(session, full_size=FULL_SIZE, offset=SUB_OFFSET, size=SUB_SIZE):
    """Run the read/modify/read sequence. Returns ``(sub_read, full_after)``."""
    itemsize = np.dtype(np.float32).itemsize
    full = np.arange(full_size, dtype=np.float32)
    full_mem = session.allocate(host=full, access='read_write', label='full')
    sub_mem = session.sub_buffer(full_mem, offset * itemsize, size * itemsize,
                                 access='read_write')

    sub = np.empty(size, dtype=np.float32)
    session.read(sub_mem, sub)
    sub_read = sub.copy()

    sub[:len(SUB_VALUES)] = SUB_VALUES
    session.write(sub_mem, sub)

    session.read(full_mem, full)
    session.release(sub_mem)
    return sub_read, full


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("SUB-BUFFERS")
    print("=" * 70)

    with ComputeSession(selector, name='sub-buffer') as session:
        print(f"✓ Using {session.describe()}")
        offset = SUB_OFFSET
        full_size = FULL_SIZE
        if offset % aligned_element_offset(session):
            offset = aligned_element_offset(session)
            full_size = offset + FULL_SIZE
            print(f"⚠ Device needs {session.device.mem_base_addr_align // 8}-byte aligned "
                  f"sub-buffers, using element offset {offset}")

        print(f"Full array        : {np.arange(full_size, dtype=np.float32).astype(int).tolist()}")
        sub_read, full = sub_buffer_scenario(session, full_size, offset)

    print(f"Read sub-array    : {sub_read.astype(int).tolist()}")
    print(f"Modified sub-array: {SUB_VALUES}")
    print(f"Full result array : {full.astype(int).tolist()}")

    expected = np.arange(full_size, dtype=np.float32)
    expected[offset:offset + SUB_SIZE] = SUB_VALUES
    passed = np.array_equal(full, expected)
    print("✓ PASSED" if passed else "❌ FAILED")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
