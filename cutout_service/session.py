"""
Interactive re-processing for one image at a time.

A `CutoutSession` decodes and segments an image once, caches the result as an
immutable `CachedImage`, and re-renders from that cache whenever the
refinement parameter changes:

    IDLE -> LOADING -> SEGMENTING -> REFINING -> COMPOSITING -> READY
                                        ^                          |
                                        +------- reprocess --------+

Every request takes a new generation id. Only the request holding the latest
id may change state or commit a result, so a slider moved quickly only ever
shows the output for its final position. Cancellation is cooperative: each
stage checks the id before it starts and once more before committing.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
import functools
import logging
from typing import Callable, List, Optional, Tuple, Union

from . import config
from .buffers import CompositeResult, PixelBuffer, ProbabilityMap, clamp_refinement
from .compositing import compose_rgba
from .errors import CancelledError, CutoutError, NoImageLoadedError, SegmentationError
from .preprocessing import decode_image_bytes
from .refinement import refine_mask, validate_map_geometry
from .segmentation import Segmenter, as_probability_map

logger = logging.getLogger(__name__)

PROGRESS_LOADING = 10
PROGRESS_SEGMENTING = 30
PROGRESS_REFINING = 50
PROGRESS_COMPOSITED = 90
PROGRESS_DONE = 100


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SEGMENTING = "segmenting"
    REFINING = "refining"
    COMPOSITING = "compositing"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True, eq=False)
class CachedImage:
    source: PixelBuffer
    probability_map: ProbabilityMap


@dataclass(frozen=True)
class ProcessingFailure:
    kind: str
    message: str


Outcome = Union[CompositeResult, ProcessingFailure, None]
StateListener = Callable[[SessionState], None]
ProgressListener = Callable[[int], None]


class CutoutSession:
    def __init__(self, segmenter: Segmenter, settings: Optional[config.Settings] = None):
        self.settings = settings or config.get_settings()
        self._segmenter = segmenter
        self._render_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cutout-render")
        self._segment_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cutout-segment")

        self._generation = 0
        self._loading_generation: Optional[int] = None
        self._cached: Optional[CachedImage] = None
        self._result: Optional[CompositeResult] = None
        self._committed: Optional[Tuple[CachedImage, CompositeResult]] = None
        self._refinement = clamp_refinement(self.settings.default_refinement)
        self._state = SessionState.IDLE
        self._progress = 0

        self._state_listeners: List[StateListener] = []
        self._progress_listeners: List[ProgressListener] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def result(self) -> Optional[CompositeResult]:
        return self._result

    @property
    def cached(self) -> Optional[CachedImage]:
        return self._cached

    @property
    def refinement(self) -> int:
        return self._refinement

    @property
    def is_loading(self) -> bool:
        return self._loading_generation is not None

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)
        return functools.partial(self._state_listeners.remove, listener)

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        self._progress_listeners.append(listener)
        return functools.partial(self._progress_listeners.remove, listener)

    def _notify(self, listeners, value) -> None:
        for listener in list(listeners):
            try:
                listener(value)
            except Exception:  # noqa: BLE001
                logger.exception("session listener %r failed", listener)

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        self._notify(self._state_listeners, state)

    def _set_progress(self, percent: int) -> None:
        self._progress = percent
        self._notify(self._progress_listeners, percent)

    # ------------------------------------------------------------------
    # Generation bookkeeping
    # ------------------------------------------------------------------

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise CancelledError(f"request {generation} superseded by {self._generation}")

    def _enter(self, generation: int, state: SessionState, progress: Optional[int] = None) -> None:
        self._check_current(generation)
        self._set_state(state)
        if progress is not None:
            self._set_progress(progress)

    async def _in_worker(self, pool: ThreadPoolExecutor, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(pool, functools.partial(func, *args, **kwargs))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _replace_segment_pool(self) -> None:
        # The timed-out call still occupies the old worker; later images get a fresh one.
        stuck = self._segment_pool
        self._segment_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cutout-segment")
        stuck.shutdown(wait=False)
        logger.warning("session: segmentation worker replaced after timeout")

    async def _segment(self, source: PixelBuffer) -> ProbabilityMap:
        timeout = self.settings.segmentation_timeout_seconds
        try:
            prob_map = await asyncio.wait_for(
                self._in_worker(self._segment_pool, self._segmenter.segment, source),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            self._replace_segment_pool()
            raise SegmentationError(f"Segmentation timed out after {timeout:g}s") from exc
        except SegmentationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SegmentationError(f"Segmentation failed: {exc}") from exc

        return as_probability_map(prob_map)

    async def _render(self, generation: int, cached: CachedImage, parameter: int) -> CompositeResult:
        self._enter(generation, SessionState.REFINING, PROGRESS_REFINING)
        alpha = await self._in_worker(
            self._render_pool,
            refine_mask,
            cached.probability_map,
            parameter,
            cached.source.size,
            settings=self.settings,
        )

        self._enter(generation, SessionState.COMPOSITING)
        result = await self._in_worker(
            self._render_pool,
            compose_rgba,
            cached.source,
            alpha,
            refinement=parameter,
            settings=self.settings,
        )

        self._check_current(generation)
        self._set_progress(PROGRESS_COMPOSITED)
        self._result = result
        self._committed = (cached, result)
        self._enter(generation, SessionState.READY, PROGRESS_DONE)
        logger.info(
            "session: committed %dx%d result refinement=%d id=%s",
            result.width,
            result.height,
            parameter,
            result.content_id[:12],
        )
        return result

    def _fail(self, generation: int, exc: Exception) -> Optional[ProcessingFailure]:
        if generation != self._generation:
            logger.debug("session: dropping failure of superseded request %d: %s", generation, exc)
            return None
        if isinstance(exc, CutoutError):
            failure = ProcessingFailure(exc.kind, str(exc))
            logger.warning("session: request %d failed (%s): %s", generation, exc.kind, exc)
        else:
            failure = ProcessingFailure(CutoutError.kind, "Background removal failed")
            logger.error("session: request %d failed unexpectedly", generation, exc_info=exc)
        self._set_state(SessionState.ERROR)
        self._set_state(SessionState.READY if self._result is not None else SessionState.IDLE)
        return failure

    # ------------------------------------------------------------------
    # Presentation boundary
    # ------------------------------------------------------------------

    async def process_new_image(
        self,
        raw_bytes: bytes,
        declared_mime_type: Optional[str] = None,
        refinement: Optional[int] = None,
    ) -> Outcome:
        """
        Decode, segment and render a new image, replacing all cached state.

        Returns the composite, a `ProcessingFailure`, or None when a newer
        request superseded this one. On failure the previous image and result
        stay in place.
        """
        if refinement is not None:
            self._refinement = clamp_refinement(refinement)
        generation = self._next_generation()
        self._loading_generation = generation
        self._cached = None
        try:
            self._enter(generation, SessionState.LOADING, PROGRESS_LOADING)
            source = await self._in_worker(self._render_pool, decode_image_bytes, raw_bytes, declared_mime_type)

            self._enter(generation, SessionState.SEGMENTING, PROGRESS_SEGMENTING)
            prob_map = await self._segment(source)
            validate_map_geometry(prob_map, source.size, self.settings.aspect_ratio_tolerance)

            self._check_current(generation)
            self._cached = CachedImage(source=source, probability_map=prob_map)
            logger.info(
                "session: cached %dx%d image with %dx%d probability map",
                source.width,
                source.height,
                prob_map.width,
                prob_map.height,
            )
            return await self._render(generation, self._cached, self._refinement)
        except CancelledError as exc:
            logger.debug("session: %s", exc)
            return None
        except Exception as exc:  # noqa: BLE001
            if generation == self._generation:
                self._cached, self._result = self._committed or (None, None)
            return self._fail(generation, exc)
        finally:
            if self._loading_generation == generation:
                self._loading_generation = None

    async def reprocess(self, parameter: int) -> Outcome:
        """
        Re-render the cached image with a new refinement parameter.

        The parameter is clamped to [-10, 10]. While a new image is still
        loading the parameter is recorded and picked up by that load, and
        None is returned.
        """
        parameter = clamp_refinement(parameter)
        self._refinement = parameter
        cached = self._cached
        if cached is None:
            if self.is_loading:
                logger.debug("session: refinement=%d deferred to in-flight load", parameter)
                return None
            return ProcessingFailure(NoImageLoadedError.kind, "No image has been processed yet")

        generation = self._next_generation()
        try:
            return await self._render(generation, cached, parameter)
        except CancelledError as exc:
            logger.debug("session: %s", exc)
            return None
        except Exception as exc:  # noqa: BLE001
            return self._fail(generation, exc)

    def reset(self) -> None:
        """Drop the cached image and result; in-flight requests become stale."""
        self._next_generation()
        self._loading_generation = None
        self._cached = None
        self._result = None
        self._committed = None
        self._set_progress(0)
        self._set_state(SessionState.IDLE)

    def close(self) -> None:
        self._render_pool.shutdown(wait=False)
        self._segment_pool.shutdown(wait=False)
