"""
Unit tests for DocumentTaskQueue.

Tests claim exclusivity, completion and stale task release.
"""

from datetime import timedelta

from eventimport.storage.base import DocumentTaskQueue, TaskStatus


class TestDocumentTaskQueue:
    """Tests for the document-backed task queue."""

    def test_enqueue_and_claim(self, queue):
        """A claimed task should be running with one attempt."""
        queue.enqueue("detect-schema", {"job_id": "j1", "batch_number": 0})
        task = queue.claim()
        assert task.name == "detect-schema"
        assert task.input == {"job_id": "j1", "batch_number": 0}
        assert task.status == TaskStatus.RUNNING
        assert task.attempts == 1

    def test_claim_empty(self, queue):
        """Claiming from an empty queue should return None."""
        assert queue.claim() is None

    def test_claim_is_exclusive(self, queue):
        """A task should be claimed only once."""
        queue.enqueue("a", {})
        assert queue.claim() is not None
        assert queue.claim() is None

    def test_fifo_order(self, queue, clock):
        """Tasks should be claimed in enqueue order."""
        queue.enqueue("first", {})
        clock.advance(seconds=1)
        queue.enqueue("second", {})
        assert queue.claim().name == "first"
        assert queue.claim().name == "second"

    def test_complete(self, queue, store):
        """complete should record done or failed status."""
        queue.enqueue("a", {})
        queue.enqueue("b", {})
        ok, bad = queue.claim(), queue.claim()
        queue.complete(ok)
        queue.complete(bad, error="boom")
        assert store.find_by_id(DocumentTaskQueue.KIND, ok.id)["status"] == "done"
        failed = store.find_by_id(DocumentTaskQueue.KIND, bad.id)
        assert failed["status"] == "failed"
        assert failed["error"] == "boom"

    def test_release_stale(self, queue, clock):
        """Tasks claimed too long ago should be handed out again."""
        queue.enqueue("a", {})
        queue.claim()
        clock.advance(minutes=10)
        assert queue.release_stale(timedelta(minutes=30)) == 0
        clock.advance(minutes=30)
        assert queue.release_stale(timedelta(minutes=30)) == 1

        redelivered = queue.claim()
        assert redelivered.name == "a"
        assert redelivered.attempts == 2

    def test_pending_by_name(self, queue):
        """pending should list unclaimed tasks, optionally by name."""
        queue.enqueue("a", {"n": 1})
        queue.enqueue("b", {"n": 2})
        assert [t.name for t in queue.pending()] == ["a", "b"]
        assert [t.input for t in queue.pending("b")] == [{"n": 2}]
