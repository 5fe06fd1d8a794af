from transfer.models import TransferDirection, TransferStatus, TransferTask


def _task(total: int = 100) -> TransferTask:
    return TransferTask(
        direction=TransferDirection.UPLOAD,
        file_name="a.jpg",
        source="/tmp/a.jpg",
        destination="device:0x10001/0xffffffff",
        total_size=total,
    )


class TestTransferTask:
    def test_new_task_is_pending_with_unique_id(self):
        a, b = _task(), _task()
        assert a.status == TransferStatus.PENDING
        assert a.id != b.id

    def test_start_time_is_set_on_first_transfer(self):
        task = _task()
        task.update_status(TransferStatus.TRANSFERRING)
        started = task.start_time
        assert started is not None
        task.update_status(TransferStatus.TRANSFERRING)
        assert task.start_time == started

    def test_terminal_status_is_final(self):
        task = _task()
        assert task.update_status(TransferStatus.COMPLETED)
        ended = task.end_time
        assert ended is not None

        assert not task.update_status(TransferStatus.FAILED, "late failure")
        assert task.status == TransferStatus.COMPLETED
        assert task.error_message is None
        assert task.end_time == ended

    def test_failure_records_reason(self):
        task = _task()
        task.update_status(TransferStatus.FAILED, "Upload failed")
        assert task.error_message == "Upload failed"
        assert task.speed == 0.0

    def test_progress_never_decreases(self):
        task = _task()
        task.update_status(TransferStatus.TRANSFERRING)
        task.update_progress(60, speed=10.0)
        task.update_progress(40)
        assert task.transferred_size == 60
        assert task.progress == 0.6

    def test_progress_ignored_after_terminal(self):
        task = _task()
        task.update_status(TransferStatus.CANCELLED)
        task.update_progress(50)
        assert task.transferred_size == 0

    def test_progress_of_empty_task(self):
        assert _task(total=0).progress == 0.0

    def test_is_terminal(self):
        assert TransferStatus.CANCELLED.is_terminal
        assert not TransferStatus.TRANSFERRING.is_terminal
