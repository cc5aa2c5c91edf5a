from unittest.mock import Mock

from analytics.entrypoints.batch_worker import BatchWorker
from analytics.service_layer.batch_processor import BatchResult


def test_run_once_processes_received_batch():
    queue, processor = Mock(), Mock()
    queue.receive_batch.return_value = ["m-1", "m-2"]
    processor.process_batch.return_value = BatchResult(succeeded=["m-1", "m-2"])

    result = BatchWorker(queue, processor, wait_time=3).run_once()

    queue.receive_batch.assert_called_once_with(wait_time=3)
    processor.process_batch.assert_called_once_with(["m-1", "m-2"])
    assert result.succeeded == ["m-1", "m-2"]


def test_run_once_skips_empty_polls():
    queue, processor = Mock(), Mock()
    queue.receive_batch.return_value = []

    assert BatchWorker(queue, processor).run_once() is None
    processor.process_batch.assert_not_called()
