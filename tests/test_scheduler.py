"""
Tests for throttled reprocessing.

Most timelines use a fake clock in milliseconds (interval=100) and drive
the scheduler with poll(); only the threaded tests touch real time.
"""
import threading
import time
import pytest

from conftest import FakeClock, RecordingWorker, gray_image
from dithering_lib import DitherMethod, DitherParams
from pipeline import process_image
from reprocess_scheduler import (
    ReprocessRequest, ReprocessScheduler, ReprocessWorker, threading_timer,
)


@pytest.fixture
def image_layer(store):
    return store.add_image_layer(gray_image(128, 8, 8), params=DitherParams(method='threshold'))


@pytest.fixture
def scheduler(store, image_layer, clock, recorder):
    sched = ReprocessScheduler(store, recorder, interval=100, clock=clock)
    sched.set_target(image_layer.id)
    return sched


def drag(scheduler, times_and_values):
    for t, value in times_and_values:
        scheduler.submit({'threshold': value}, now=t)


DRAG = [(0, 10), (20, 20), (40, 30), (60, 40), (90, 50)]


class TestCoalescing:

    def test_burst_runs_once_with_latest_value(self, scheduler, recorder):
        drag(scheduler, DRAG)
        assert recorder.requests == []
        assert scheduler.poll(99) is None
        request = scheduler.poll(100)
        assert request is not None
        assert [r.params.threshold for r in recorder.requests] == [50]

    def test_release_after_window_runs_again(self, scheduler, recorder):
        drag(scheduler, DRAG)
        scheduler.poll(100)
        scheduler.release(105)
        assert [r.params.threshold for r in recorder.requests] == [50, 50]
        assert recorder.requests[1].sequence > recorder.requests[0].sequence

    def test_release_inside_window_replaces_trailing_run(self, scheduler, recorder):
        drag(scheduler, DRAG)
        request = scheduler.release(95)
        assert request.params.threshold == 50
        assert request.reason == 'release'
        # the window was consumed by the release
        assert scheduler.poll(100) is None
        assert len(recorder.requests) == 1

    def test_release_with_nothing_pending_is_idempotent(self, scheduler, recorder):
        scheduler.release(0)
        scheduler.release(1)
        assert len(recorder.requests) == 2
        assert recorder.requests[0].params == recorder.requests[1].params

    def test_last_writer_wins_per_field(self, scheduler, recorder):
        scheduler.submit({'threshold': 90}, now=0)
        scheduler.submit({'brightness': 150}, now=10)
        scheduler.submit({'threshold': 95}, now=20)
        assert scheduler.pending_edits == {'threshold': 95, 'brightness': 150}
        request = scheduler.poll(100)
        assert (request.params.threshold, request.params.brightness) == (95, 150)
        assert scheduler.pending_edits == {}

    def test_edit_after_overdue_window_fires_trailing_run_first(self, scheduler, recorder):
        scheduler.submit({'threshold': 10}, now=0)
        scheduler.submit({'threshold': 20}, now=150)
        assert [r.params.threshold for r in recorder.requests] == [10]
        assert scheduler.next_due == 250
        scheduler.poll(250)
        assert [r.params.threshold for r in recorder.requests] == [10, 20]

    def test_at_most_one_throttled_run_per_window(self, scheduler, recorder):
        for t in range(0, 1000, 10):
            scheduler.submit({'threshold': t % 256}, now=t)
            scheduler.poll(t)
        # one run per 100 ms window
        assert 9 <= len(recorder.requests) <= 10

    def test_commit_bypasses_throttle(self, scheduler, recorder):
        request = scheduler.submit({'method': 'bayer'}, commit=True, now=5)
        assert request is recorder.requests[0]
        assert request.params.method.value == 'bayer'
        assert scheduler.next_due is None

    def test_unknown_field_rejected(self, scheduler):
        with pytest.raises(KeyError):
            scheduler.submit({'gamma': 1.0}, now=0)

    def test_no_target_ignores_edits(self, store, recorder, clock):
        sched = ReprocessScheduler(store, recorder, interval=100, clock=clock)
        assert sched.submit({'threshold': 5}, now=0) is None
        assert sched.release(0) is None
        assert recorder.requests == []

    def test_uses_clock_when_time_omitted(self, scheduler, clock, recorder):
        scheduler.submit({'threshold': 42})
        clock.advance(100)
        scheduler.poll()
        assert recorder.requests[0].params.threshold == 42
        assert scheduler.last_run_at == 100


class TestTargetSwitch:

    def test_switch_clears_pending(self, scheduler, store, recorder):
        other = store.add_image_layer(gray_image(0, 4, 4))
        scheduler.submit({'threshold': 10}, now=0)
        scheduler.set_target(other.id)
        assert scheduler.pending_edits == {}
        assert scheduler.poll(100) is None
        assert recorder.requests == []

    def test_switch_marks_old_requests_stale(self, scheduler, store, image_layer):
        request = scheduler.release(0)
        assert scheduler.is_relevant(request)
        scheduler.set_target(store.add_image_layer(gray_image(0, 4, 4)).id)
        assert not scheduler.is_relevant(request)

    def test_reselecting_same_layer_still_discards(self, scheduler, image_layer):
        request = scheduler.release(0)
        scheduler.set_target(image_layer.id)
        assert not scheduler.is_relevant(request)

    def test_text_layer_cannot_be_target(self, scheduler, store):
        text = store.add_text_layer("x")
        with pytest.raises(TypeError):
            scheduler.set_target(text.id)

    def test_in_flight_result_discarded_after_switch(self, store, image_layer, clock):
        other = store.add_image_layer(gray_image(0, 4, 4))
        before = image_layer.bitmap
        holder = {}

        def switching_process(*args):
            # selection changes while the pipeline is running
            holder['scheduler'].set_target(other.id)
            return process_image(*args)

        worker = ReprocessWorker(store, process=switching_process)
        sched = ReprocessScheduler(store, worker, interval=100, clock=clock)
        holder['scheduler'] = sched
        worker.bind(sched)
        sched.set_target(image_layer.id)
        sched.submit({'threshold': 255}, commit=True, now=0)

        assert image_layer.bitmap is before
        assert image_layer.threshold == 128
        assert worker.discarded == 1

    def test_non_interactive_requests_survive_switch(self, store, image_layer, clock):
        worker = ReprocessWorker(store)
        sched = ReprocessScheduler(store, worker, interval=100, clock=clock)
        worker.bind(sched)
        sched.set_target(None)
        request = sched.request_layer(image_layer.id, image_layer.params.replace(threshold=255))
        assert not request.interactive
        assert image_layer.bitmap.ink_count() == 64


class TestWorker:

    def test_inline_worker_applies_result(self, store, image_layer, clock):
        worker = ReprocessWorker(store)
        sched = ReprocessScheduler(store, worker, interval=100, clock=clock)
        worker.bind(sched)
        sched.set_target(image_layer.id)
        drag(sched, [(0, 150), (50, 200)])
        sched.poll(100)
        assert image_layer.threshold == 200
        assert image_layer.bitmap.ink_count() == 64
        assert worker.applied == 1

    def test_failure_keeps_last_good_bitmap(self, store, image_layer, caplog):
        errors = []

        def broken(*args):
            raise RuntimeError("boom")

        worker = ReprocessWorker(store, process=broken, on_error=lambda r, e: errors.append(e))
        before = image_layer.bitmap
        worker.submit(ReprocessRequest(image_layer.id, DitherParams(invert=True), 1, interactive=False))
        assert image_layer.bitmap is before
        assert worker.failed == 1
        assert len(errors) == 1
        assert "boom" in caplog.text

    def test_out_of_order_results_never_regress(self, store, image_layer):
        worker = ReprocessWorker(store)
        newer = ReprocessRequest(image_layer.id, DitherParams(method='threshold', threshold=255), 2,
                                 interactive=False)
        older = ReprocessRequest(image_layer.id, DitherParams(method='threshold', threshold=0), 1,
                                 interactive=False)
        assert worker.execute(newer)
        assert not worker.execute(older)
        assert image_layer.threshold == 255

    def test_threaded_runs_serialised_and_superseded(self, store, image_layer):
        gate = threading.Event()
        started = threading.Event()
        seen = []

        def slow_process(original, params, width, height):
            seen.append(params.threshold)
            started.set()
            gate.wait(5)
            return process_image(original, params, width, height)

        worker = ReprocessWorker(store, threaded=True, process=slow_process)
        for seq, value in enumerate([10, 20, 30], start=1):
            worker.submit(ReprocessRequest(image_layer.id,
                                           DitherParams(method='threshold', threshold=value),
                                           seq, interactive=False))
        assert started.wait(5)
        gate.set()
        assert worker.wait_idle(5)
        # the queued request for 20 was replaced by 30 before it started
        assert seen == [10, 30]
        assert image_layer.threshold == 30


class TestStoreEdits:

    def run_with_edit_mid_run(self, store, image_layer, clock, **edit):
        """Commit threshold=255 while the store is edited during the pipeline run."""
        calls = []

        def editing_process(*args):
            if not calls:
                store.update_layer(image_layer.id, **edit)
            calls.append(args[2:])
            return process_image(*args)

        worker = ReprocessWorker(store, process=editing_process)
        sched = ReprocessScheduler(store, worker, interval=100, clock=clock)
        worker.bind(sched)
        sched.set_target(image_layer.id)
        sched.submit({'threshold': 255}, commit=True, now=0)
        return sched, worker, calls

    def test_resize_during_run_keeps_resized_bitmap(self, store, image_layer, clock):
        sched, worker, calls = self.run_with_edit_mid_run(store, image_layer, clock,
                                                          width=25, height=25)
        assert calls == [(8, 8)]
        assert worker.applied == 0
        assert image_layer.bitmap.size == (25, 25)
        assert image_layer.bitmap == process_image(image_layer.original_image,
                                                   image_layer.params, 25, 25)

    def test_method_change_during_run_is_kept(self, store, image_layer, clock):
        sched, worker, _ = self.run_with_edit_mid_run(store, image_layer, clock, method='bayer')
        assert worker.applied == 0
        assert image_layer.dither_method is DitherMethod.BAYER
        assert image_layer.bitmap == process_image(image_layer.original_image,
                                                   image_layer.params, 8, 8)
        # the next interactive run builds on the store's method
        sched.submit({'threshold': 90}, commit=True, now=10)
        assert image_layer.dither_method is DitherMethod.BAYER
        assert image_layer.threshold == 90

    def test_store_edit_survives_later_commit(self, scheduler, store, image_layer, recorder):
        store.update_layer(image_layer.id, method='bayer')
        scheduler.submit({'threshold': 100}, commit=True, now=0)
        params = recorder.requests[-1].params
        assert params.method is DitherMethod.BAYER
        assert params.threshold == 100

    def test_store_edit_replaces_pending_edit(self, scheduler, store, image_layer, recorder):
        scheduler.submit({'threshold': 10}, now=0)
        store.update_layer(image_layer.id, threshold=77)
        assert scheduler.latest_params().threshold == 77
        assert scheduler.poll(100) is None
        assert recorder.requests == []

    def test_applied_runs_are_not_mistaken_for_store_edits(self, store, image_layer, clock):
        worker = ReprocessWorker(store)
        sched = ReprocessScheduler(store, worker, interval=100, clock=clock)
        worker.bind(sched)
        sched.set_target(image_layer.id)
        sched.submit({'threshold': 200}, commit=True, now=0)
        sched.submit({'threshold': 30}, now=10)
        sched.poll(110)
        assert image_layer.threshold == 30
        assert sched.latest_params().threshold == 30

    def test_removing_target_clears_it(self, scheduler, store, image_layer, recorder):
        scheduler.submit({'threshold': 10}, now=0)
        store.remove_layer(image_layer.id)
        assert scheduler.target is None
        assert scheduler.poll(100) is None
        assert recorder.requests == []

    def test_clearing_store_clears_target(self, scheduler, store):
        store.clear()
        assert scheduler.target is None


def test_timer_closes_window(store, image_layer):
    clock = FakeClock()
    recorder = RecordingWorker()
    timers = []

    class FakeTimer:
        def __init__(self, delay, callback):
            self.delay = delay
            self.callback = callback
            self.cancelled = False

        def cancel(self):
            self.cancelled = True

    def timer(delay, callback):
        handle = FakeTimer(delay, callback)
        timers.append(handle)
        return handle

    sched = ReprocessScheduler(store, recorder, interval=100, clock=clock, timer=timer)
    sched.set_target(image_layer.id)
    sched.submit({'threshold': 77})
    assert timers[0].delay == 100
    clock.advance(100)
    timers[0].callback()
    assert [r.params.threshold for r in recorder.requests] == [77]

    sched.submit({'threshold': 78})
    sched.release()
    assert timers[1].cancelled


def test_force_flush_and_latest_params(scheduler, recorder):
    scheduler.submit({'threshold': 60, 'invert': True}, now=0)
    assert scheduler.latest_params().threshold == 60
    request = scheduler.force_flush(10)
    assert request.params.invert is True
    assert scheduler.next_due is None


def test_threading_timer_runs_window(store, image_layer):
    worker = ReprocessWorker(store, threaded=True)
    sched = ReprocessScheduler(store, worker, interval=0.01, timer=threading_timer)
    worker.bind(sched)
    sched.set_target(image_layer.id)
    sched.submit({'threshold': 10})
    deadline = time.monotonic() + 5
    while image_layer.threshold != 10 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert worker.wait_idle(timeout=5)
    assert image_layer.threshold == 10
    assert sched.run_count == 1
