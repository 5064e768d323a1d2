import pytest

from picoscope_control import pico_status as ps
from picoscope_control.driver import RatioMode


def test_allocate_zero_filled(device):
    pair = device.buffers.allocate(0, 100)
    assert pair.capacity == 100
    assert pair.app_capacity == 100
    assert not pair.aggregated
    assert not pair.driver_max.any()
    assert pair.driver_max.dtype.name == "int16"


def test_app_capacity_larger_than_driver(device):
    pair = device.buffers.allocate(0, 100, app_capacity=500)
    assert pair.capacity == 100
    assert pair.app_capacity == 500


def test_min_max_pair(device):
    pair = device.buffers.allocate(0, 10, with_min_max=True)
    assert pair.aggregated
    assert len(pair.driver_min) == len(pair.app_min) == 10
    device.buffers.register(0, RatioMode.AGGREGATE)
    assert pair.ratio_mode == RatioMode.AGGREGATE


def test_registered_pair_is_not_replaced_or_released(device):
    pool = device.buffers
    pool.allocate(0, 100)
    pool.register(0)
    assert pool.get(0).registered
    with pytest.raises(ps.DeviceBusyError):
        pool.allocate(0, 200)
    with pytest.raises(ps.DeviceBusyError):
        pool.release(0)
    pool.clear(0)
    pool.release(0)
    assert len(pool) == 0


def test_pinned_pool_refuses_changes(device):
    pool = device.buffers
    pool.allocate(0, 10)
    pool.pin()
    with pytest.raises(ps.DeviceBusyError):
        pool.allocate(1, 10)
    with pytest.raises(ps.DeviceBusyError):
        pool.release(0)
    pool.unpin()
    pool.release(0)


def test_invalid_capacity(device):
    with pytest.raises(ps.InvalidConfigurationError):
        device.buffers.allocate(0, 0)


def test_missing_pair(device):
    with pytest.raises(ps.InvalidConfigurationError):
        device.buffers.get(2)


def test_bulk_allocation_and_release_all(device):
    pool = device.buffers
    device.acquisition.setup_rapid_block(3)
    pairs = pool.allocate_bulk(0, 50, range(3))
    assert [pair.segment for pair in pairs] == [0, 1, 2]
    for segment in range(3):
        pool.register(0, segment=segment)
    assert [pair.segment for pair in pool.pairs(segment=1)] == [1]
    pool.release_all()
    assert len(pool) == 0
    assert list(pool) == []
