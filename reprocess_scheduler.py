"""
Throttled reprocessing of image layers during live parameter edits.

ReprocessScheduler turns a stream of slider edits on the active layer into
a bounded number of pipeline runs: edits inside one throttle window are
coalesced (last writer wins per field) and run once when the window
closes, while a release or commit runs immediately. ReprocessWorker
executes the resulting requests, one at a time per layer, and hands
still-relevant results to the Layer Store.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from dithering_lib import DitherParams
from layer_store import ImageLayer, LayerStore
from pipeline import process_image
from raster import target_size

logger = logging.getLogger('thermal_studio.scheduler')

__all__ = [
    'DEFAULT_INTERVAL',
    'ReprocessRequest',
    'ReprocessScheduler',
    'ReprocessWorker',
    'threading_timer',
]

# Seconds between throttled runs
DEFAULT_INTERVAL = 0.1


class ReprocessRequest:
    """
    One pipeline run for one layer with a complete parameter set. size is
    the layer size in pixels the run renders at; None means the layer's
    size when the run starts.
    """

    __slots__ = ('layer_id', 'params', 'sequence', 'generation', 'interactive', 'reason',
                 'size')

    def __init__(self, layer_id: str, params: DitherParams, sequence: int,
                 generation: int = 0, interactive: bool = True, reason: str = 'edit',
                 size: Optional[Tuple[int, int]] = None):
        self.layer_id = layer_id
        self.params = params
        self.sequence = sequence
        self.generation = generation
        self.interactive = interactive
        self.reason = reason
        self.size = size

    def __repr__(self):
        return (f"ReprocessRequest({self.layer_id} #{self.sequence} gen={self.generation} "
                f"{self.reason} {self.params!r})")


def threading_timer(delay: float, callback: Callable[[], None]):
    """Default timer: fire callback once on a daemon thread after delay seconds."""
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class ReprocessScheduler:
    """
    Per-layer throttle/coalesce controller for the active image layer.

    State is explicit: the target layer, pending edits by field, the latest
    full value set, the open window deadline and the time of the last run.
    Sequence numbers come from the store, so synchronous edits made through
    LayerStore.update_layer order against scheduled runs. Such edits to the
    target are folded into the latest value set as they happen.

    Args:
        store: Layer Store holding the target layers
        worker: Object with submit(request), usually a ReprocessWorker
        interval: Throttle window in seconds
        clock: Callable returning the current time in seconds
        timer: Optional callable(delay, callback) -> handle with cancel(),
               used to close windows automatically; without it the caller
               drives the scheduler with poll()
    """

    def __init__(self, store: LayerStore, worker, interval: float = DEFAULT_INTERVAL,
                 clock: Callable[[], float] = time.monotonic,
                 timer: Optional[Callable] = None):
        if interval < 0:
            raise ValueError("Throttle interval must be non-negative")
        self.store = store
        self.worker = worker
        self.interval = interval
        self.clock = clock
        self.timer = timer

        self._lock = threading.RLock()
        self._target: Optional[str] = None
        self._generation = 0
        self._latest: Dict = {}
        # target params as last seen in the store
        self._store_params: Dict = {}
        self.pending_edits: Dict = {}
        self._window_due: Optional[float] = None
        self._timer_handle = None
        self.last_run_at: Optional[float] = None
        self.run_count = 0
        store.add_listener(self._on_store_event)

    # ---------- state ----------

    @property
    def target(self) -> Optional[str]:
        return self._target

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def next_due(self) -> Optional[float]:
        """Time at which the open window closes, or None."""
        return self._window_due

    def latest_params(self) -> Optional[DitherParams]:
        with self._lock:
            if self._target is None:
                return None
            return DitherParams(**self._latest)

    def is_relevant(self, request: ReprocessRequest) -> bool:
        """
        Interactive results only count while their layer is still the target
        of the same generation. Non-interactive ones are keyed by layer id alone.
        """
        if not request.interactive:
            return request.layer_id in self.store
        with self._lock:
            return request.layer_id == self._target and request.generation == self._generation

    # ---------- target ----------

    def set_target(self, layer_id: Optional[str]):
        """
        Make layer_id the layer receiving edits (None for no target).

        Pending edits and any open window for the previous target are
        dropped, and results still in flight for it will be discarded.
        """
        with self._lock:
            self._cancel_window()
            if self.pending_edits:
                logger.debug("Dropping %d pending edit(s) for %s", len(self.pending_edits), self._target)
            self.pending_edits = {}
            self._generation += 1
            self._target = None
            self._latest = {}
            self._store_params = {}
            if layer_id is not None:
                layer = self.store.get(layer_id)
                if not isinstance(layer, ImageLayer):
                    raise TypeError(f"Layer {layer_id} is a {layer.kind} layer and cannot be reprocessed")
                self._target = layer_id
                self._latest = layer.params.to_dict()
                self._store_params = dict(self._latest)
            self.last_run_at = None
        logger.debug("Reprocess target: %s (generation %d)", layer_id, self._generation)

    # ---------- edits ----------

    def submit(self, edit: Dict, commit: bool = False, now: Optional[float] = None
               ) -> Optional[ReprocessRequest]:
        """
        Record a parameter edit for the target layer.

        Args:
            edit: Mapping of DitherParams field -> new value
            commit: Run immediately (select commit, toggle) instead of throttling
            now: Current time, defaults to the scheduler clock

        Returns:
            The request started immediately, if any
        """
        if now is None:
            now = self.clock()
        unknown = set(edit) - set(DitherParams.FIELDS)
        if unknown:
            raise KeyError(f"Unknown dither parameter(s): {sorted(unknown)}")

        # an overdue trailing run belongs to the earlier edits
        self.poll(now)

        with self._lock:
            if self._target is None:
                logger.debug("Edit %s ignored: no reprocess target", edit)
                return None
            self.pending_edits.update(edit)
            self._latest.update(edit)
            if commit:
                request = self._start_run(now, 'commit')
            else:
                request = None
                if self._window_due is None:
                    self._open_window(now)
        if request is not None:
            self.worker.submit(request)
        return request

    def poll(self, now: Optional[float] = None) -> Optional[ReprocessRequest]:
        """
        Close the window if its deadline has passed and run the coalesced edits.

        Returns:
            The request started, if any
        """
        if now is None:
            now = self.clock()
        with self._lock:
            if self._window_due is None or now < self._window_due:
                return None
            if not self.pending_edits:
                self._cancel_window()
                return None
            request = self._start_run(now, 'throttle')
        self.worker.submit(request)
        return request

    def release(self, now: Optional[float] = None) -> Optional[ReprocessRequest]:
        """
        Pointer release: run now with the latest full value set, bypassing
        the remaining wait. Safe to call when nothing is pending.
        """
        if now is None:
            now = self.clock()
        with self._lock:
            if self._target is None:
                return None
            request = self._start_run(now, 'release')
        self.worker.submit(request)
        return request

    force_flush = release

    def request_layer(self, layer_id: str, params: Optional[DitherParams] = None,
                      reason: str = 'load') -> Optional[ReprocessRequest]:
        """
        Non-interactive reprocessing of any image layer (project load, batch
        changes). Not subject to throttling or to the selection-based discard.
        """
        layer = self.store.get(layer_id)
        if not isinstance(layer, ImageLayer):
            return None
        request = ReprocessRequest(layer_id, params or layer.params, self.store.next_sequence(),
                                   interactive=False, reason=reason,
                                   size=target_size(layer.width, layer.height))
        self.worker.submit(request)
        return request

    # ---------- internals ----------

    def _start_run(self, now: float, reason: str) -> ReprocessRequest:
        self._cancel_window()
        self.pending_edits = {}
        self.last_run_at = now
        self.run_count += 1
        layer = self.store.find(self._target)
        size = target_size(layer.width, layer.height) if layer is not None else None
        request = ReprocessRequest(self._target, DitherParams(**self._latest),
                                   self.store.next_sequence(), self._generation, True, reason,
                                   size=size)
        logger.debug("Reprocess run %r", request)
        return request

    def _on_store_event(self, event: str, layer_id: Optional[str]):
        if event in ('removed', 'cleared'):
            if self._target is not None and (event == 'cleared' or layer_id == self._target):
                self.set_target(None)
            return
        if event not in ('updated', 'reprocessed') or layer_id != self._target:
            return
        layer = self.store.find(layer_id)
        if not isinstance(layer, ImageLayer):
            return
        with self._lock:
            if layer_id != self._target:
                return
            current = layer.params.to_dict()
            if event == 'updated':
                # a direct store edit is newer than anything received before it
                changed = {k: v for k, v in current.items() if self._store_params.get(k) != v}
                if changed:
                    self._latest.update(changed)
                    for key in changed:
                        self.pending_edits.pop(key, None)
                    logger.debug("Target %s changed in the store: %s", layer_id, changed)
            self._store_params = current

    def _open_window(self, now: float):
        due = now + self.interval
        self._window_due = due
        if self.timer is not None:
            self._timer_handle = self.timer(self.interval, lambda: self._on_timer(due))

    def _on_timer(self, due: float):
        # timers may wake marginally before the clock reaches the deadline
        with self._lock:
            if self._window_due != due:
                return
        self.poll(max(self.clock(), due))

    def _cancel_window(self):
        self._window_due = None
        if self._timer_handle is not None:
            self._timer_handle.cancel()
            self._timer_handle = None


class ReprocessWorker:
    """
    Executes reprocess requests inline or on background threads.

    Runs for the same layer never overlap: while one is in flight, a newer
    request waits in a single slot per layer (replacing an older waiting one).
    A failing run is logged and leaves the layer's last good bitmap in place.
    """

    def __init__(self, store: LayerStore, threaded: bool = False,
                 is_relevant: Optional[Callable[[ReprocessRequest], bool]] = None,
                 process: Callable = process_image,
                 on_error: Optional[Callable[[ReprocessRequest, Exception], None]] = None):
        self.store = store
        self.threaded = threaded
        self.is_relevant = is_relevant
        self.process = process
        self.on_error = on_error

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running = set()
        self._queued: Dict[str, ReprocessRequest] = {}
        self.applied = 0
        self.discarded = 0
        self.failed = 0

    def bind(self, scheduler: ReprocessScheduler):
        """Use the scheduler's relevance rule for discarding stale results."""
        self.is_relevant = scheduler.is_relevant
        return self

    def submit(self, request: ReprocessRequest):
        if not self.threaded:
            self.execute(request)
            return
        with self._lock:
            if request.layer_id in self._running:
                superseded = self._queued.get(request.layer_id)
                if superseded is not None:
                    logger.debug("Request #%d superseded by #%d",
                                 superseded.sequence, request.sequence)
                self._queued[request.layer_id] = request
                return
            self._running.add(request.layer_id)
        threading.Thread(target=self._run_layer, args=(request,), daemon=True).start()

    def _run_layer(self, request: ReprocessRequest):
        layer_id = request.layer_id
        while request is not None:
            self.execute(request)
            with self._lock:
                request = self._queued.pop(layer_id, None)
                if request is None:
                    self._running.discard(layer_id)
                    self._idle.notify_all()

    def _relevant(self, request: ReprocessRequest) -> bool:
        if self.is_relevant is None:
            return True
        return self.is_relevant(request)

    def execute(self, request: ReprocessRequest) -> bool:
        """
        Run the pipeline for one request and apply the result if still relevant.

        Returns:
            True if the layer's bitmap was replaced
        """
        layer = self.store.find(request.layer_id)
        if not isinstance(layer, ImageLayer) or not self._relevant(request):
            self.discarded += 1
            logger.debug("Discarding %r before run", request)
            return False

        size = request.size or target_size(layer.width, layer.height)
        started = time.perf_counter()
        try:
            bitmap = self.process(layer.original_image, request.params, *size)
        except Exception as e:
            self.failed += 1
            logger.error("Reprocessing %s failed, keeping previous bitmap: %s", request.layer_id, e)
            if self.on_error is not None:
                self.on_error(request, e)
            return False

        # the target may have changed while the pipeline ran
        if not self._relevant(request):
            self.discarded += 1
            logger.debug("Discarding stale result %r", request)
            return False

        applied = self.store.apply_bitmap(request.layer_id, bitmap, request.params,
                                          request.sequence, size=size)
        if applied:
            self.applied += 1
            logger.debug("Applied #%d to %s in %.1f ms", request.sequence, request.layer_id,
                         (time.perf_counter() - started) * 1000)
        else:
            self.discarded += 1
        return applied

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no layer has a run in flight or queued."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._running and not self._queued, timeout)
