from __future__ import annotations

import asyncio
import gc
import threading

import pytest

from conftest import CPU, FailingLoader, FakeStore, FakeTrainer, synthetic_mnist
from digit_sketch.errors import DatasetUnavailable, TrainingFailed
from digit_sketch.lifecycle import LifecycleState, ModelLifecycle
from digit_sketch.model import build_network
from digit_sketch.store import ModelStore
from digit_sketch.train import Trainer


@pytest.mark.asyncio
async def test_stored_model_is_used_without_training():
    stored = build_network(device=CPU)
    store, trainer = FakeStore(stored), FakeTrainer()
    lifecycle = ModelLifecycle(store, trainer)
    statuses = []

    model = await lifecycle.load_model(statuses.append)

    assert model is stored
    assert statuses == ["cached"]
    assert trainer.calls == 0
    assert lifecycle.state is LifecycleState.READY


@pytest.mark.asyncio
async def test_missing_store_falls_back_to_training():
    store, trainer = FakeStore(), FakeTrainer()
    lifecycle = ModelLifecycle(store, trainer)
    statuses = []

    await lifecycle.load_model(statuses.append)

    assert statuses == ["cached", "training"]
    assert store.loads == 1
    assert trainer.calls == 1
    assert lifecycle.status.state is LifecycleState.READY
    assert lifecycle.status.error is None


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_training_run():
    store, trainer = FakeStore(), FakeTrainer()
    lifecycle = ModelLifecycle(store, trainer)

    models = await asyncio.gather(*(lifecycle.load_model() for _ in range(5)))

    assert all(model is models[0] for model in models)
    assert store.loads == 1
    assert trainer.calls == 1


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_store_read():
    store, trainer = FakeStore(build_network(device=CPU)), FakeTrainer()
    lifecycle = ModelLifecycle(store, trainer)

    models = await asyncio.gather(*(lifecycle.load_model() for _ in range(3)))

    assert len({id(model) for model in models}) == 1
    assert store.loads == 1
    assert trainer.calls == 0


@pytest.mark.asyncio
async def test_resolved_model_is_memoized():
    store, trainer = FakeStore(), FakeTrainer()
    lifecycle = ModelLifecycle(store, trainer)

    first = await lifecycle.load_model()
    second = await lifecycle.load_model()

    assert first is second
    assert trainer.calls == 1
    assert store.loads == 1


@pytest.mark.asyncio
async def test_reset_starts_a_fresh_resolution():
    store, trainer = FakeStore(), FakeTrainer()
    lifecycle = ModelLifecycle(store, trainer)

    before = await lifecycle.load_model()
    lifecycle.reset_model()
    assert lifecycle.state is LifecycleState.LOADING
    assert not lifecycle.is_ready
    after = await lifecycle.load_model()

    assert before is not after
    assert trainer.calls == 2


@pytest.mark.asyncio
async def test_training_failure_reaches_every_caller_and_is_not_memoized():
    store = FakeStore()
    trainer = FakeTrainer(errors=[DatasetUnavailable("MNIST image sprite could not be downloaded")])
    lifecycle = ModelLifecycle(store, trainer)

    results = await asyncio.gather(*(lifecycle.load_model() for _ in range(3)), return_exceptions=True)

    assert all(isinstance(result, DatasetUnavailable) for result in results)
    assert all(isinstance(result, TrainingFailed) for result in results)
    assert trainer.calls == 1
    assert lifecycle.state is LifecycleState.ERROR
    assert "could not be downloaded" in lifecycle.error

    model = await lifecycle.load_model()

    assert model is not None
    assert trainer.calls == 2
    assert lifecycle.state is LifecycleState.READY
    assert lifecycle.error is None


@pytest.mark.asyncio
async def test_state_is_training_while_fit_runs():
    gate = threading.Event()
    trainer = FakeTrainer(gate=gate)
    lifecycle = ModelLifecycle(FakeStore(), trainer)

    pending = asyncio.ensure_future(lifecycle.load_model())
    await asyncio.to_thread(trainer.entered.wait, 5)
    assert lifecycle.state is LifecycleState.TRAINING

    gate.set()
    await pending
    assert lifecycle.state is LifecycleState.READY


@pytest.mark.asyncio
async def test_late_joiner_gets_remaining_status_hints():
    gate = threading.Event()
    trainer = FakeTrainer(gate=gate)
    lifecycle = ModelLifecycle(FakeStore(), trainer)
    early, late = [], []

    first = asyncio.ensure_future(lifecycle.load_model(early.append))
    await asyncio.to_thread(trainer.entered.wait, 5)
    second = asyncio.ensure_future(lifecycle.load_model(late.append))
    await asyncio.sleep(0)
    gate.set()

    assert await first is await second
    assert early == ["cached", "training"]
    assert late == []
    assert trainer.calls == 1


@pytest.mark.asyncio
async def test_reset_during_training_detaches_the_stale_flight():
    gate = threading.Event()
    trainer = FakeTrainer(gate=gate)
    lifecycle = ModelLifecycle(FakeStore(), trainer)

    stale_call = asyncio.ensure_future(lifecycle.load_model())
    await asyncio.to_thread(trainer.entered.wait, 5)

    lifecycle.reset_model()
    gate.set()
    stale = await stale_call

    # The waiting caller still got its model, but the cache forgot it.
    assert stale is not None
    assert not lifecycle.is_ready
    assert lifecycle.state is LifecycleState.LOADING

    fresh = await lifecycle.load_model()
    assert fresh is not stale
    assert trainer.calls == 2


@pytest.mark.asyncio
async def test_stale_failure_does_not_touch_new_state():
    gate = threading.Event()
    trainer = FakeTrainer(errors=[TrainingFailed("first run failed")], gate=gate)
    lifecycle = ModelLifecycle(FakeStore(), trainer)

    stale_call = asyncio.ensure_future(lifecycle.load_model())
    await asyncio.to_thread(trainer.entered.wait, 5)
    lifecycle.reset_model()
    gate.set()

    with pytest.raises(TrainingFailed):
        await stale_call
    assert lifecycle.state is LifecycleState.LOADING
    assert lifecycle.error is None


@pytest.mark.asyncio
async def test_broken_status_observer_does_not_fail_the_load():
    def observer(status):
        raise RuntimeError("ui went away")

    lifecycle = ModelLifecycle(FakeStore(), FakeTrainer())

    model = await lifecycle.load_model(observer)

    assert model is not None
    assert lifecycle.state is LifecycleState.READY


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_flight():
    gate = threading.Event()
    trainer = FakeTrainer(gate=gate)
    lifecycle = ModelLifecycle(FakeStore(), trainer)

    impatient = asyncio.ensure_future(lifecycle.load_model())
    patient = asyncio.ensure_future(lifecycle.load_model())
    await asyncio.to_thread(trainer.entered.wait, 5)
    impatient.cancel()
    gate.set()

    assert await patient is not None
    assert impatient.cancelled()
    assert trainer.calls == 1


@pytest.mark.asyncio
async def test_model_layers_follow_load_model():
    trainer = FakeTrainer()
    lifecycle = ModelLifecycle(FakeStore(), trainer)
    statuses = []

    layers = await lifecycle.get_model_layers(statuses.append)

    assert layers[0].name == "Conv2d"
    assert layers[-1].output_shape == "[None, 10]"
    assert statuses == ["cached", "training"]

    await lifecycle.get_model_layers()
    assert trainer.calls == 1


@pytest.mark.asyncio
async def test_model_layers_fail_like_load_model():
    lifecycle = ModelLifecycle(FakeStore(), FakeTrainer(errors=[TrainingFailed("fit diverged")]))

    with pytest.raises(TrainingFailed, match="fit diverged"):
        await lifecycle.get_model_layers()
    assert lifecycle.state is LifecycleState.ERROR


class FlakyLoader:
    """Fails like a dropped connection until `failures` runs out."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def load(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("image fetch failed")
        return synthetic_mnist()


@pytest.mark.asyncio
async def test_loader_transport_error_sets_error_and_next_call_retries(small_config):
    loader = FlakyLoader(failures=1)
    store = ModelStore(small_config.cache_dir)
    lifecycle = ModelLifecycle(store, Trainer(loader, store, small_config))

    with pytest.raises(TrainingFailed, match="image fetch failed") as info:
        await lifecycle.load_model()

    assert isinstance(info.value, DatasetUnavailable)
    assert isinstance(info.value.__cause__, ConnectionError)
    assert lifecycle.state is LifecycleState.ERROR
    assert "image fetch failed" in lifecycle.error

    model = await lifecycle.load_model()

    assert model is not None
    assert loader.calls == 2
    assert lifecycle.state is LifecycleState.READY
    assert store.exists()


@pytest.mark.asyncio
async def test_loader_failure_through_real_trainer_reaches_every_caller(small_config):
    loader = FailingLoader(IndexError("sprite row out of range"))
    store = ModelStore(small_config.cache_dir)
    lifecycle = ModelLifecycle(store, Trainer(loader, store, small_config))

    results = await asyncio.gather(*(lifecycle.load_model() for _ in range(3)), return_exceptions=True)

    assert all(isinstance(result, DatasetUnavailable) for result in results)
    assert loader.calls == 1
    assert lifecycle.state is LifecycleState.ERROR


@pytest.mark.asyncio
async def test_any_store_failure_falls_back_to_training():
    class UnreadableStore:
        def load(self):
            raise OSError("permission denied")

    trainer = FakeTrainer()
    lifecycle = ModelLifecycle(UnreadableStore(), trainer)
    statuses = []

    await lifecycle.load_model(statuses.append)

    assert statuses == ["cached", "training"]
    assert trainer.calls == 1
    assert lifecycle.state is LifecycleState.READY


@pytest.mark.asyncio
async def test_failure_after_every_caller_left_is_not_reported_unretrieved():
    loop = asyncio.get_running_loop()
    reported = []
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    try:
        gate = threading.Event()
        trainer = FakeTrainer(errors=[TrainingFailed("no data")], gate=gate)
        lifecycle = ModelLifecycle(FakeStore(), trainer)

        caller = asyncio.ensure_future(lifecycle.load_model())
        await asyncio.to_thread(trainer.entered.wait, 5)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        gate.set()
        for _ in range(500):
            if lifecycle.state is LifecycleState.ERROR:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0)
        gc.collect()

        assert lifecycle.state is LifecycleState.ERROR
        assert not [context for context in reported if "never retrieved" in context.get("message", "")]
    finally:
        loop.set_exception_handler(previous_handler)
