"""
256-Bin Histogram
=================

Builds a histogram of random 8-bit data. Every work-group counts its
share of the input into a local-memory sub-histogram with local atomics
and writes it out; the host merges the sub-histograms and checks the
result against numpy. The histogram is plotted with matplotlib.

The group size is checked against the device limits before dispatch, as
is the local memory needed for one sub-histogram.

Usage:
    python sample_histogram.py [platform [device_type [device]]]

    CL_SAMPLES_OUTPUT_DIR=image_output   where the plot is written
"""

import os
import sys

import numpy as np

# Non-interactive backend for headless systems
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from cl_args import KernelArgs
from cl_config import selector_from_args, configure_logging, load_kernel_source
from cl_errors import UnsupportedFeatureError
from cl_session import ComputeSession

BIN_COUNT = 256
GROUP_SIZE = 128
NUM_GROUPS = 64
WIDTH = 1024
HEIGHT = 1024

OUTPUT_DIR = os.environ.get('CL_SAMPLES_OUTPUT_DIR', 'image_output')


def check_device_limits(session, group_size):
    """Return a usable group size, or raise if the device cannot run the kernel."""
    device = session.device
    local_needed = BIN_COUNT * np.dtype(np.uint32).itemsize
    if device.local_mem_size < local_needed:
        raise UnsupportedFeatureError(
            f"{session.device_name} has {device.local_mem_size} bytes of local memory, "
            f"a sub-histogram needs {local_needed}")
    limit = min(device.max_work_group_size, device.max_work_item_sizes[0])
    if group_size > limit:
        print(f"⚠ Group size {group_size} exceeds the device limit, using {limit}")
        group_size = limit
    return group_size


def histogram(session, data, group_size=GROUP_SIZE, num_groups=NUM_GROUPS):
    """256-bin histogram of uint8 ``data``. Returns ``(merged, sub_histograms)``."""
    data = np.ascontiguousarray(data, dtype=np.uint8).ravel()
    group_size = check_device_limits(session, group_size)

    kernel = session.build(load_kernel_source('histogram'), 'histogram256')
    data_mem = session.allocate(host=data, access='read_only', label='data')
    sub_hist = np.zeros((num_groups, BIN_COUNT), dtype=np.uint32)
    sub_mem = session.allocate(sub_hist.nbytes, access='write_only', label='sub-histograms')

    args = KernelArgs(kernel)
    args.buffer(0, data_mem)
    args.scalar(1, np.int32(data.size))
    args.local(2, BIN_COUNT * np.dtype(np.uint32).itemsize)
    args.buffer(3, sub_mem)

    session.dispatch(kernel, args, group_size * num_groups, group_size)
    session.read(sub_mem, sub_hist)
    session.await_all()
    return sub_hist.sum(axis=0, dtype=np.uint64), sub_hist


def plot_histogram(counts, path):
    fig, ax = plt.subplots(figsize=(10, 4))
    ax.bar(np.arange(BIN_COUNT), counts, width=1.0, color='steelblue')
    ax.set_xlim(0, BIN_COUNT)
    ax.set_xlabel('Value')
    ax.set_ylabel('Count')
    ax.set_title('256-bin histogram')
    fig.tight_layout()
    fig.savefig(path, dpi=100)
    plt.close(fig)


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("256-BIN HISTOGRAM")
    print("=" * 70)

    rng = np.random.RandomState(42)
    data = rng.randint(0, BIN_COUNT, size=WIDTH * HEIGHT).astype(np.uint8)

    with ComputeSession(selector, name='histogram') as session:
        print(f"✓ Using {session.describe()}")
        counts, sub_hist = histogram(session, data)

    expected = np.bincount(data, minlength=BIN_COUNT)
    print(f"  Elements:        {data.size}")
    print(f"  Sub-histograms:  {sub_hist.shape[0]}")
    print(f"  Total counted:   {int(counts.sum())}")

    os.makedirs(OUTPUT_DIR, exist_ok=True)
    path = os.path.join(OUTPUT_DIR, 'histogram.png')
    plot_histogram(counts, path)
    print(f"✓ Saved {path}")

    passed = np.array_equal(counts, expected)
    print("✓ PASSED" if passed else "❌ FAILED")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
