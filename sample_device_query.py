"""
Device Query
============

Lists every OpenCL platform and device with the attributes the other
samples depend on, then shows which device auto-selection would pick.

Usage:
    python sample_device_query.py [device_type]
"""

import sys

import cl_devices
from cl_config import configure_logging, DEFAULT_DEVICE_TYPE
from cl_errors import NoMatchingDeviceError


def format_bytes(n):
    for unit in ('B', 'KB', 'MB', 'GB'):
        if n < 1024 or unit == 'GB':
            return f"{n:.0f} {unit}" if unit == 'B' else f"{n:.1f} {unit}"
        n /= 1024.0


def print_device(info, indent='    '):
    print(f"{indent}Name:                 {info['name']}")
    print(f"{indent}Vendor:               {info['vendor']}")
    print(f"{indent}Type:                 {info['type']}")
    print(f"{indent}Version:              {info['version']}")
    print(f"{indent}Driver:               {info['driver_version']}")
    print(f"{indent}Compute units:        {info['max_compute_units']}")
    print(f"{indent}Max work-group size:  {info['max_work_group_size']}")
    print(f"{indent}Max work-item sizes:  {info['max_work_item_sizes']}")
    print(f"{indent}Local memory:         {format_bytes(info['local_mem_size'])}")
    print(f"{indent}Global memory:        {format_bytes(info['global_mem_size'])}")
    print(f"{indent}Max allocation:       {format_bytes(info['max_mem_alloc_size'])}")
    print(f"{indent}Image support:        {'yes' if info['image_support'] else 'no'}")
    print(f"{indent}Base address align:   {info['mem_base_addr_align'] // 8} bytes")
    print(f"{indent}SVM:                  {'yes' if info['svm'] else 'no'}")
    print(f"{indent}Extensions:           {len(info['extensions'])}")


def collect(device_type=DEFAULT_DEVICE_TYPE):
    """Return ``[(platform_name, [device_info, ...]), ...]``."""
    result = []
    for platform in cl_devices.list_platforms():
        devices = cl_devices.list_devices(platform, device_type)
        result.append((platform.name.strip(),
                       [cl_devices.describe_device(d) for d in devices]))
    return result


def main():
    configure_logging()
    device_type = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_DEVICE_TYPE

    print("=" * 70)
    print("OPENCL PLATFORMS AND DEVICES")
    print("=" * 70)

    platforms = collect(device_type)
    if not platforms:
        print("❌ No OpenCL platforms found")
        return 1

    for p_index, (platform_name, devices) in enumerate(platforms):
        print(f"\nPlatform {p_index}: {platform_name}")
        if not devices:
            print(f"  (no '{device_type}' devices)")
        for d_index, info in enumerate(devices):
            print(f"  Device {d_index}:")
            print_device(info)

    print()
    try:
        platform, device = cl_devices.best_device(device_type)
    except NoMatchingDeviceError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Auto-selection picks {device.name.strip()} on {platform.name.strip()} "
          f"(score {cl_devices.score_device(platform, device)})")
    return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
