"""
Kernel Argument Info
====================

Builds a kernel with a mix of argument kinds (global, constant, local,
by-value and, where the device supports images, an image) and prints the
metadata the runtime reports for every argument: name, address, access
and type qualifiers, and type name.

Argument metadata needs the ``-cl-kernel-arg-info`` build option, which
the session always adds.

Usage:
    python sample_kernel_args.py [platform [device_type [device]]]
"""

import sys

import pyopencl as cl

from cl_config import selector_from_args, configure_logging
from cl_errors import constant_name
from cl_session import ComputeSession

KERNEL_TEMPLATE = """
__kernel void sampleKernel(__global const volatile float *first,
                           __constant char *second,
                           __local unsigned int *third,
                           unsigned short fourth{extra})
{{
}}
"""

IMAGE_ARG = ",\n                           __write_only image2d_t fifth"


def type_qualifier_names(value):
    """Type qualifiers are a bitfield: CONST | RESTRICT | VOLATILE."""
    names = [name for name, bit in vars(cl.kernel_arg_type_qualifier).items()
             if not name.startswith('_') and isinstance(bit, int) and bit and value & bit]
    return ' | '.join(sorted(names)) or 'NONE'


def describe_arguments(kernel):
    """Return one dict per argument with readable qualifier names."""
    if kernel.arg_info is None:
        return []
    rows = []
    for index, info in enumerate(kernel.arg_info):
        rows.append({
            'index': index,
            'name': info.name,
            'address': constant_name(cl.kernel_arg_address_qualifier, info.address_qualifier,
                                     str(info.address_qualifier)),
            'access': constant_name(cl.kernel_arg_access_qualifier, info.access_qualifier,
                                    str(info.access_qualifier)),
            'type_qualifier': type_qualifier_names(info.type_qualifier),
            'type_name': info.type_name,
        })
    return rows


def build_sample_kernel(session):
    extra = IMAGE_ARG if session.device.image_support else ''
    return session.build(KERNEL_TEMPLATE.format(extra=extra), 'sampleKernel')


def main():
    configure_logging()
    selector = selector_from_args()

    print("=" * 70)
    print("KERNEL ARGUMENT INFO")
    print("=" * 70)

    with ComputeSession(selector, name='kernel-args') as session:
        print(f"✓ Using {session.describe()}")
        kernel = build_sample_kernel(session)
        rows = describe_arguments(kernel)

    if not rows:
        print("❌ The device does not report kernel argument info")
        return 1

    for row in rows:
        print(f"Argument {row['index']}:")
        print(f"    Name: {row['name']}")
        print(f"    Address qualifier: {row['address']}")
        print(f"    Access qualifier : {row['access']}")
        print(f"    Type qualifier   : {row['type_qualifier']}")
        print(f"    Type name        : {row['type_name']}")
    return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
