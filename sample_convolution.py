"""
2D Convolution
==============

Convolves a single-channel float image with a few small masks (edge
detection, sharpen, box blur). The local work size equals the mask size
and the global work size is the image size rounded up to a multiple of
it; work-items that fall outside the image return early. Every result is
checked against scipy.ndimage.

Usage:
    python sample_convolution.py [platform [device_type [device]]]
"""

import sys
import time

import numpy as np
import pyopencl.cltypes as cltypes
from scipy import ndimage

from cl_args import KernelArgs, round_up
from cl_config import selector_from_args, configure_logging, load_kernel_source
from cl_session import ComputeSession

COMPILE_OPTIONS = '-cl-mad-enable'


def blur_mask(size):
    return np.full((size, size), 1.0 / (size * size), dtype=np.float32)


MASKS = {
    'Edge detection': np.array([[-1, 0, -1],
                                [0, 4, 0],
                                [-1, 0, -1]], dtype=np.float32),
    'Sharpen': np.array([[-1, 0, -1],
                         [0, 5, 0],
                         [-1, 0, -1]], dtype=np.float32),
    'Blur 3x3': blur_mask(3),
    'Blur 5x5': blur_mask(5),
}


def make_image(width=512, height=384):
    """Smooth gradient with a bright square, values in [0, 1]."""
    y, x = np.mgrid[0:height, 0:width].astype(np.float32)
    image = 0.5 * (x / width) + 0.25 * (y / height)
    image[height // 4:height // 2, width // 4:width // 2] = 1.0
    return image.astype(np.float32)


def convolve(session, kernel, image, mask):
    """Convolve ``image`` with ``mask`` on the device (edges clamped)."""
    height, width = image.shape
    mask_h, mask_w = mask.shape
    image = np.ascontiguousarray(image, dtype=np.float32)
    mask = np.ascontiguousarray(mask, dtype=np.float32)

    input_mem = session.allocate(host=image, access='read_only', policy='use', label='input')
    mask_mem = session.allocate(host=mask, access='read_only', label='mask')
    output_mem = session.allocate(image.nbytes, access='write_only', label='output')

    args = KernelArgs(kernel)
    args.buffer(0, input_mem)
    args.buffer(1, mask_mem)
    args.buffer(2, output_mem)
    args.scalar(3, cltypes.make_int2(width, height))
    args.scalar(4, cltypes.make_int2(mask_w, mask_h))
    args.scalar(5, cltypes.make_int2(mask_w // 2, mask_h // 2))

    local_size = (mask_w, mask_h)
    global_size = (round_up(mask_w, width), round_up(mask_h, height))
    session.dispatch(kernel, args, global_size, local_size)

    output = np.empty_like(image)
    session.read(output_mem, output)
    session.await_all()

    for mem in (input_mem, mask_mem, output_mem):
        session.release(mem)
    return output


def reference(image, mask):
    return ndimage.correlate(image, mask, mode='nearest')


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("2D CONVOLUTION")
    print("=" * 70)

    image = make_image()
    passed = True

    with ComputeSession(selector, name='convolution') as session:
        print(f"✓ Using {session.describe()}")
        kernel = session.build(load_kernel_source('convolution'), 'convolution',
                               options=COMPILE_OPTIONS)

        for name, mask in MASKS.items():
            start = time.perf_counter()
            result = convolve(session, kernel, image, mask)
            device_ms = (time.perf_counter() - start) * 1000

            start = time.perf_counter()
            expected = reference(image, mask)
            host_ms = (time.perf_counter() - start) * 1000

            ok = np.allclose(result, expected, rtol=1e-4, atol=1e-4)
            passed &= ok
            print(f"  {name:<15} device {device_ms:7.2f} ms   scipy {host_ms:7.2f} ms   "
                  f"{'✓' if ok else '❌'}")

    print("✓ PASSED" if passed else "❌ FAILED")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
