"""
Owner of the one cached model.

`ModelLifecycle` resolves a model at most once at a time: concurrent callers
share a single in-flight resolution, the first success is memoized, and a
failure is reported to every waiting caller without being memoized. A
resolution first tries the model store and falls back to training.

State machine::

    LOADING -> READY
    LOADING -> TRAINING -> READY
    LOADING -> TRAINING -> ERROR
    LOADING -> ERROR

`reset_model` returns to LOADING from anywhere. A resolution that is still
running when the cache is reset is not cancelled; it runs to completion,
hands its result to the callers already waiting on it, and is otherwise
ignored.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol

from .model import CompiledModel, LayerDescriptor

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]

STATUS_CACHED = "cached"
STATUS_TRAINING = "training"


class LifecycleState(Enum):
    LOADING = "loading"
    TRAINING = "training"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class LifecycleStatus:
    state: LifecycleState
    error: Optional[str] = None


class PersistedModelSource(Protocol):
    def load(self) -> CompiledModel:
        ...


class ModelTrainer(Protocol):
    def train(self) -> CompiledModel:
        ...


class _Flight:
    """One resolution attempt and the status observers attached to it."""

    def __init__(self, generation: int) -> None:
        self.generation = generation
        self.observers: List[StatusCallback] = []
        self.task: Optional["asyncio.Task[CompiledModel]"] = None

    def emit(self, status: str) -> None:
        for observer in list(self.observers):
            try:
                observer(status)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Status observer failed on %r", status)


def _consume_outcome(task: "asyncio.Task[CompiledModel]") -> None:
    # Every caller may have been cancelled before a failure lands.
    if not task.cancelled():
        task.exception()


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


class ModelLifecycle:
    """
    Single-flight cache around the stored/trained model.

    Args:
        store: Source of a previously saved model. Any exception it raises
            (normally `PersistedLoadFailed`) means training takes over.
        trainer: Produces (and persists) a new model when the store fails.
    """

    def __init__(self, store: PersistedModelSource, trainer: ModelTrainer) -> None:
        self._store = store
        self._trainer = trainer
        self._state = LifecycleState.LOADING
        self._error: Optional[str] = None
        self._model: Optional[CompiledModel] = None
        self._flight: Optional[_Flight] = None
        self._generation = 0

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def status(self) -> LifecycleStatus:
        return LifecycleStatus(state=self._state, error=self._error)

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    async def load_model(self, on_status: Optional[StatusCallback] = None) -> CompiledModel:
        """
        Return the cached model, resolving it first if needed.

        Args:
            on_status: Receives `"cached"` when the store is tried and
                `"training"` when training starts, for the resolution this
                call joins. Hints already emitted before joining are not
                replayed.

        Raises:
            TrainingFailed: if the store had no model and training failed.
        """
        if self._model is not None:
            return self._model

        flight = self._flight
        if flight is None:
            flight = _Flight(self._generation)
            self._flight = flight
            if on_status is not None:
                flight.observers.append(on_status)
            flight.task = asyncio.ensure_future(self._resolve(flight))
            flight.task.add_done_callback(_consume_outcome)
        elif on_status is not None:
            flight.observers.append(on_status)

        assert flight.task is not None
        # A caller giving up must not cancel the resolution others wait on.
        return await asyncio.shield(flight.task)

    def reset_model(self) -> None:
        """Forget the cached model and any resolution in progress."""
        self._generation += 1
        self._model = None
        self._flight = None
        self._state = LifecycleState.LOADING
        self._error = None
        logger.info("Model cache reset (generation %d)", self._generation)

    async def get_model_layers(self, on_status: Optional[StatusCallback] = None) -> List[LayerDescriptor]:
        """Resolve the model and describe its layers."""
        model = await self.load_model(on_status)
        return model.layers()

    def _is_current(self, flight: _Flight) -> bool:
        return flight.generation == self._generation

    def _enter(self, flight: _Flight, state: LifecycleState) -> None:
        if self._is_current(flight):
            self._state = state

    async def _resolve(self, flight: _Flight) -> CompiledModel:
        self._enter(flight, LifecycleState.LOADING)
        if self._is_current(flight):
            self._error = None
        logger.info("Resolving model (generation %d)", flight.generation)

        try:
            flight.emit(STATUS_CACHED)
            try:
                model = await asyncio.to_thread(self._store.load)
            except Exception as exc:  # pylint: disable=broad-except
                logger.info("Falling back to training: %s", describe_error(exc))
                self._enter(flight, LifecycleState.TRAINING)
                flight.emit(STATUS_TRAINING)
                model = await asyncio.to_thread(self._trainer.train)
        except Exception as exc:
            if self._is_current(flight):
                self._state = LifecycleState.ERROR
                self._error = describe_error(exc)
                self._flight = None
            logger.error("Model resolution failed: %s", describe_error(exc))
            raise

        if self._is_current(flight):
            self._model = model
            self._state = LifecycleState.READY
            self._flight = None
            logger.info("Model ready (generation %d)", flight.generation)
        else:
            logger.info("Discarding model from stale generation %d", flight.generation)
        return model
