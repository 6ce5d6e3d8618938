import contextlib
import sys
import time

import numpy as np
import pytest

import sample_bandwidth
import sample_convolution
import sample_device_query
import sample_events
import sample_histogram
import sample_kernel_args
import sample_mapped_buffer
import sample_multi_device
import sample_reduction
import sample_regions_callbacks
import sample_simple_image
import sample_sub_buffer
import sample_svm
import sample_vector_add
from cl_errors import InvalidRegionError


@pytest.fixture
def argv(monkeypatch, platform_index):
    monkeypatch.setattr(sys, 'argv', ['sample', str(platform_index), 'all', '0'])


def test_vector_add(session):
    result = sample_vector_add.vector_add(session, [0, 1, 2, 3], [0, 1, 2, 3])
    assert result.tolist() == [0, 2, 4, 6]


def test_vector_add_main(argv):
    assert sample_vector_add.main() == 0


def test_reduction(session):
    total, partial = sample_reduction.reduce_sum(session, np.arange(100000, dtype=np.float32))
    assert partial.size == sample_reduction.NUM_WORK_GROUPS
    assert total == pytest.approx(4999950000.0, rel=1e-5)


def test_kahan_sum():
    assert sample_reduction.kahan_sum([1e16, 1.0, -1e16]) == 1.0
    assert sample_reduction.kahan_sum([1.0, 1e100, 1.0, -1e100]) == 2.0
    assert sample_reduction.kahan_sum([]) == 0.0


def test_sub_buffer_scenario(session):
    if sample_sub_buffer.SUB_OFFSET % sample_sub_buffer.aligned_element_offset(session):
        with pytest.raises(InvalidRegionError):
            sample_sub_buffer.sub_buffer_scenario(session)
        pytest.skip('device needs sub-buffers aligned beyond element 2')
    sub_read, full = sample_sub_buffer.sub_buffer_scenario(session)
    assert sub_read.tolist() == [2, 3, 4, 5]
    assert full.tolist() == [0, 1, -5, -4, -3, -2, 6, 7]


def test_sub_buffer_aligned_window(session):
    offset = sample_sub_buffer.aligned_element_offset(session)
    sub_read, full = sample_sub_buffer.sub_buffer_scenario(session, offset + 8, offset)
    assert sub_read.tolist() == [offset, offset + 1, offset + 2, offset + 3]
    assert full[offset:offset + 4].tolist() == [-5, -4, -3, -2]
    assert full[offset + 4] == offset + 4


def test_sub_buffer_main(argv):
    assert sample_sub_buffer.main() == 0


def test_mapped_buffer(session):
    a = np.arange(10, dtype=np.float32)
    b = np.arange(10, dtype=np.float32)
    result = sample_mapped_buffer.mapped_multiply(session, a, b)
    expected = np.arange(10, dtype=np.float32)
    expected[4:7] = [40, 50, 60]
    np.testing.assert_allclose(result, expected * b)


def test_events(profiling_session):
    a = np.arange(1000, dtype=np.float32)
    stats = sample_events.ExecutionStatistics()
    total, product = sample_events.run_events(profiling_session, a, a, stats)
    np.testing.assert_allclose(total, a + a)
    np.testing.assert_allclose(product, a * a)
    assert [name for name, _ in stats.normalized()] == ['kernel0', 'kernel1', '  read0', '  read1']


def test_regions_and_callbacks(session):
    lines = []
    region, calls = sample_regions_callbacks.region_read(session, countdown=1, delay=0.01,
                                                         log=lines.append)
    np.testing.assert_array_equal(region, sample_regions_callbacks.REFERENCE)
    deadline = time.time() + 5
    while not any(kind == 'read' for kind, _ in calls) and time.time() < deadline:
        time.sleep(0.01)
    assert ('read', 'COMPLETE') in calls
    assert ('release', 'c') in calls


def test_kernel_args(session):
    kernel = sample_kernel_args.build_sample_kernel(session)
    rows = sample_kernel_args.describe_arguments(kernel)
    assert [r['name'] for r in rows][:4] == ['first', 'second', 'third', 'fourth']
    assert rows[0]['address'] == 'GLOBAL'
    assert rows[1]['address'] == 'CONSTANT'
    assert rows[2]['address'] == 'LOCAL'
    assert rows[3]['type_name'] in ('ushort', 'unsigned short')


def test_multi_device(selector):
    data = np.arange(64, dtype=np.float32)
    with contextlib.ExitStack() as stack:
        sessions = sample_multi_device.open_sessions(stack, selector)
        results = sample_multi_device.run_on_devices(sessions, data)
    assert len(results) == len(sessions) >= 1
    for session, ms, output in results:
        assert ms >= 0
        np.testing.assert_allclose(output, data.sum(), rtol=1e-5)


def test_simple_image(session):
    if not session.device.image_support:
        pytest.skip('device has no image support')
    pixels = sample_simple_image.make_test_pattern(64, 48)
    rotated = sample_simple_image.rotate_image(session, pixels, 0.0)
    np.testing.assert_array_equal(rotated, pixels)


def test_simple_image_main(argv, session, monkeypatch, tmp_path):
    if not session.device.image_support:
        pytest.skip('device has no image support')
    monkeypatch.setattr(sample_simple_image, 'OUTPUT_DIR', str(tmp_path))
    assert sample_simple_image.main() in (0, 1)
    assert (tmp_path / 'rotated.png').exists()


def test_convolution(session):
    kernel = session.build(sample_convolution.load_kernel_source('convolution'),
                           'convolution', options=sample_convolution.COMPILE_OPTIONS)
    image = sample_convolution.make_image(40, 30)
    for mask in sample_convolution.MASKS.values():
        result = sample_convolution.convolve(session, kernel, image, mask)
        np.testing.assert_allclose(result, sample_convolution.reference(image, mask),
                                   rtol=1e-4, atol=1e-4)


def test_histogram(session):
    rng = np.random.RandomState(0)
    data = rng.randint(0, 256, size=50000).astype(np.uint8)
    counts, sub_hist = sample_histogram.histogram(session, data, num_groups=8)
    assert sub_hist.shape == (8, 256)
    np.testing.assert_array_equal(counts, np.bincount(data, minlength=256))


def test_histogram_plot(tmp_path):
    path = tmp_path / 'hist.png'
    sample_histogram.plot_histogram(np.arange(256), str(path))
    assert path.exists()


def test_bandwidth(session):
    for memory_mode in sample_bandwidth.MEMORY_MODES:
        for access_mode in sample_bandwidth.ACCESS_MODES:
            results = sample_bandwidth.run_test(session, memory_mode, access_mode,
                                                min_exp=10, max_exp=12, iterations=2)
            assert [size for size, _ in results] == [1024, 2048, 4096]
            assert all(bw > 0 for _, bw in results)


def test_device_query():
    for platform_name, devices in sample_device_query.collect():
        assert platform_name
        for info in devices:
            assert info['max_work_group_size'] >= 1


def test_format_bytes():
    assert sample_device_query.format_bytes(512) == '512 B'
    assert sample_device_query.format_bytes(2048) == '2.0 KB'


def test_svm_multiply(svm_session):
    a = np.arange(10, dtype=np.float32)
    lines = []
    products, result = sample_svm.svm_multiply(svm_session, a, a, log=lines.append)
    np.testing.assert_allclose(products, a * a)
    np.testing.assert_allclose(result, (a + a) * (a + a))
    assert lines[0] == '  At 0 got 0.0, setting 0.0'
    assert lines[-1] == '  Release callback ran for svm'


def test_svm_main(argv, svm_session):
    assert sample_svm.main() == 0
