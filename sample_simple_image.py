"""
Image Rotation
==============

Copies an RGBA picture into a read-only image, rotates it around its
centre with a kernel that samples the source image, and reads the
rotated picture back from a write-only image. Both pictures are saved
side by side as a PNG.

The input is a generated test pattern, so no image file is needed.

Usage:
    python sample_simple_image.py [platform [device_type [device]]]

    CL_SAMPLES_OUTPUT_DIR=image_output   where the PNG is written
    CL_SAMPLES_ANGLE=30                  rotation in degrees
"""

import os
import sys

import numpy as np

# Non-interactive backend for headless systems
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from cl_config import selector_from_args, configure_logging
from cl_session import ComputeSession

KERNEL_SOURCE = """
const sampler_t samplerIn =
    CLK_NORMALIZED_COORDS_FALSE |
    CLK_ADDRESS_CLAMP |
    CLK_FILTER_NEAREST;

__kernel void rotateImage(__read_only image2d_t sourceImage,
                          __write_only image2d_t targetImage,
                          float angle)
{
    int gidX = get_global_id(0);
    int gidY = get_global_id(1);
    int w = get_image_width(sourceImage);
    int h = get_image_height(sourceImage);
    int cx = w / 2;
    int cy = h / 2;
    int dx = gidX - cx;
    int dy = gidY - cy;
    float ca = cos(angle);
    float sa = sin(angle);
    int inX = (int)(cx + ca * dx - sa * dy);
    int inY = (int)(cy + sa * dx + ca * dy);
    int2 posIn = (int2)(inX, inY);
    int2 posOut = (int2)(gidX, gidY);
    uint4 pixel = read_imageui(sourceImage, samplerIn, posIn);
    write_imageui(targetImage, posOut, pixel);
}
"""

OUTPUT_DIR = os.environ.get('CL_SAMPLES_OUTPUT_DIR', 'image_output')


def make_test_pattern(width=256, height=256):
    """RGBA checkerboard with a colour gradient, shape (height, width, 4), uint8."""
    y, x = np.mgrid[0:height, 0:width]
    checker = ((x // 32 + y // 32) % 2).astype(np.uint8)
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[..., 0] = (x * 255 // max(width - 1, 1)).astype(np.uint8)
    pixels[..., 1] = (y * 255 // max(height - 1, 1)).astype(np.uint8)
    pixels[..., 2] = checker * 255
    pixels[..., 3] = 255
    return pixels


def rotate_reference(pixels, angle):
    """Host version of the kernel, for verification."""
    height, width = pixels.shape[:2]
    cx, cy = width // 2, height // 2
    y, x = np.mgrid[0:height, 0:width]
    dx, dy = x - cx, y - cy
    ca, sa = np.float32(np.cos(angle)), np.float32(np.sin(angle))
    in_x = (cx + ca * dx - sa * dy).astype(np.int32)
    in_y = (cy + sa * dx + ca * dy).astype(np.int32)
    inside = (in_x >= 0) & (in_x < width) & (in_y >= 0) & (in_y < height)
    out = np.zeros_like(pixels)
    out[inside] = pixels[in_y[inside], in_x[inside]]
    return out


def rotate_image(session, pixels, angle):
    """Rotate ``pixels`` (height, width, 4 uint8) by ``angle`` radians on the device."""
    height, width = pixels.shape[:2]
    pixels = np.ascontiguousarray(pixels, dtype=np.uint8)

    kernel = session.build(KERNEL_SOURCE, 'rotateImage')
    source = session.allocate_image((width, height), 'RGBA', 'UNSIGNED_INT8',
                                    access='read_only', host=pixels, label='source')
    target = session.allocate_image((width, height), 'RGBA', 'UNSIGNED_INT8',
                                    access='write_only', label='target')

    session.dispatch(kernel, [source, target, np.float32(angle)], (width, height))
    rotated = np.empty_like(pixels)
    session.read_image(target, rotated)
    session.await_all()
    return rotated


def save_comparison(original, rotated, path):
    fig, axes = plt.subplots(1, 2, figsize=(10, 5))
    axes[0].imshow(original)
    axes[0].set_title('Input')
    axes[1].imshow(rotated)
    axes[1].set_title('Rotated')
    for ax in axes:
        ax.axis('off')
    fig.tight_layout()
    fig.savefig(path, dpi=100)
    plt.close(fig)


def main():
    configure_logging()
    selector = selector_from_args()
    angle = np.deg2rad(float(os.environ.get('CL_SAMPLES_ANGLE', 30)))

    print("=" * 70)
    print("IMAGE ROTATION")
    print("=" * 70)

    pixels = make_test_pattern()
    with ComputeSession(selector, name='simple-image') as session:
        print(f"✓ Using {session.describe()}")
        rotated = rotate_image(session, pixels, angle)

    # Rounding of cos/sin may differ in the last bit on the device
    mismatch = np.mean(np.any(rotated != rotate_reference(pixels, angle), axis=-1))
    print(f"  Pixels differing from host rotation: {mismatch * 100:.2f}%")

    os.makedirs(OUTPUT_DIR, exist_ok=True)
    path = os.path.join(OUTPUT_DIR, 'rotated.png')
    save_comparison(pixels, rotated, path)
    print(f"✓ Saved {path}")

    passed = mismatch < 0.01
    print("✓ PASSED" if passed else "❌ FAILED")
    return 0 if passed else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
