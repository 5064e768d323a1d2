import numpy as np
import pytest

from picoscope_control.buffers import BufferPairPool
from picoscope_control.driver import StreamingPayload
from picoscope_control.streaming import DeliveredBlock, IndexingMode, StreamingPipeline


def payload(count, start, trigger_at=0, triggered=False, auto_stop=False, overflow=0):
    return StreamingPayload(1, count, start, overflow, trigger_at, int(triggered), int(auto_stop))


@pytest.fixture
def pool():
    # allocate() never touches the driver
    return BufferPairPool(None, 1)


def fill(pipeline, channel, values):
    pair = pipeline.pair(channel)
    pair.driver_max[:len(values)] = values


class TestDriverIndexing:
    def test_copies_at_start_index(self, pool):
        pool.allocate(0, 8)
        pipeline = StreamingPipeline(pool, [0])
        fill(pipeline, 0, np.arange(8))

        pipeline.on_latest_values(payload(3, 0))
        pipeline.on_latest_values(payload(5, 3))

        assert pipeline.cursor.total_samples == 8
        assert pipeline.cursor.callbacks == 2
        assert pipeline.pair(0).app_max.tolist() == list(range(8))
        assert pipeline.pop_delivered() == [DeliveredBlock(0, 3, 0), DeliveredBlock(3, 5, 3)]
        assert pipeline.pop_delivered() == []

    def test_total_keeps_counting_across_wraps(self, pool):
        pool.allocate(0, 4)
        pipeline = StreamingPipeline(pool, [0])
        for _ in range(5):
            pipeline.on_latest_values(payload(4, 0))
        assert pipeline.cursor.total_samples == 20
        blocks = pipeline.pop_delivered()
        assert [block.first_sample for block in blocks] == [0, 4, 8, 12, 16]
        assert all(block.offset == 0 for block in blocks)

    def test_latest_unwraps_ring(self, pool):
        pool.allocate(0, 4)
        pipeline = StreamingPipeline(pool, [0])
        fill(pipeline, 0, [10, 11, 12, 13])
        pipeline.on_latest_values(payload(4, 0))
        fill(pipeline, 0, [14, 15])
        pipeline.on_latest_values(payload(2, 0))
        assert pipeline.latest(0).tolist() == [12, 13, 14, 15]
        assert pipeline.latest(0, 3).tolist() == [13, 14, 15]

    def test_block_data_is_a_copy(self, pool):
        pool.allocate(0, 4)
        pipeline = StreamingPipeline(pool, [0])
        fill(pipeline, 0, [1, 2, 3, 4])
        pipeline.on_latest_values(payload(2, 1))
        block, = pipeline.pop_delivered()
        data = pipeline.block_data(0, block)
        pipeline.pair(0).app_max[:] = 0
        assert data.tolist() == [2, 3]


class TestTrigger:
    def test_trigger_index_is_absolute_and_latched(self, pool):
        pool.allocate(0, 8)
        pipeline = StreamingPipeline(pool, [0])
        pipeline.on_latest_values(payload(4, 0))
        assert not pipeline.cursor.triggered
        pipeline.on_latest_values(payload(4, 4, trigger_at=2, triggered=True))
        assert pipeline.cursor.triggered
        assert pipeline.cursor.triggered_at == 6
        # later callbacks that keep the flag set do not move the trigger
        pipeline.on_latest_values(payload(4, 0, trigger_at=1, triggered=True))
        assert pipeline.cursor.triggered_at == 6

    def test_auto_stop_latched(self, pool):
        pool.allocate(0, 8)
        pipeline = StreamingPipeline(pool, [0])
        pipeline.on_latest_values(payload(0, 0, auto_stop=True))
        assert pipeline.cursor.auto_stop
        assert pipeline.cursor.total_samples == 0


class TestAppIndexing:
    def test_linear_placement(self, pool):
        pool.allocate(0, 4, app_capacity=12)
        pipeline = StreamingPipeline(pool, [0], IndexingMode.APP)
        assert pipeline.app_capacity == 12
        fill(pipeline, 0, [1, 2, 3, 4])
        pipeline.on_latest_values(payload(4, 0))
        fill(pipeline, 0, [5, 6, 7, 8])
        pipeline.on_latest_values(payload(4, 0))
        assert pipeline.pair(0).app_max[:8].tolist() == list(range(1, 9))
        assert pipeline.latest(0, 3).tolist() == [6, 7, 8]

    def test_clamps_at_capacity(self, pool):
        pool.allocate(0, 4, app_capacity=6)
        pipeline = StreamingPipeline(pool, [0], IndexingMode.APP)
        fill(pipeline, 0, [1, 2, 3, 4])
        pipeline.on_latest_values(payload(4, 0))
        assert not pipeline.cursor.app_buffer_full
        pipeline.on_latest_values(payload(4, 0))
        cursor = pipeline.cursor
        assert cursor.app_buffer_full
        assert cursor.written == 6
        assert cursor.total_samples == 8
        assert pipeline.pair(0).app_max.tolist() == [1, 2, 3, 4, 1, 2]
        assert pipeline.pop_delivered() == [DeliveredBlock(0, 4, 0), DeliveredBlock(4, 2, 4)]

        pipeline.on_latest_values(payload(4, 0))
        assert cursor.written == 6
        assert cursor.total_samples == 12
        assert pipeline.pop_delivered() == []


def test_aggregated_min_copied(pool):
    pool.allocate(0, 4, with_min_max=True)
    pipeline = StreamingPipeline(pool, [0])
    pair = pipeline.pair(0)
    pair.driver_max[:] = [5, 6, 7, 8]
    pair.driver_min[:] = [-5, -6, -7, -8]
    pipeline.on_latest_values(payload(4, 0))
    block, = pipeline.pop_delivered()
    assert pipeline.aggregated
    assert pipeline.block_data(0, block, minimum=True).tolist() == [-5, -6, -7, -8]


def test_multiple_channels_and_overflow(pool):
    pool.allocate(0, 4)
    pool.allocate(2, 4)
    pipeline = StreamingPipeline(pool, [0, 2])
    pipeline.pair(2).driver_max[:] = [9, 9, 9, 9]
    pipeline.on_latest_values(payload(4, 0, overflow=0b100))
    assert pipeline.pair(2).app_max.tolist() == [9, 9, 9, 9]
    assert pipeline.overflowed_channels() == [2]


def test_callback_never_raises(pool):
    pool.allocate(0, 4)
    pipeline = StreamingPipeline(pool, [0])
    pipeline.on_latest_values(None)
    assert isinstance(pipeline.callback_error, AttributeError)
