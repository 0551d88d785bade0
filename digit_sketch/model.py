"""
Neural network used by the digit sketch classifier, plus the thin runtime
wrapper the rest of the package talks to.

The architecture is frozen: a persisted model only loads back into exactly
this layer stack, which is why `ARCHITECTURE_VERSION` travels with every
checkpoint. The last layer is a softmax, so the network returns class
probabilities directly and is trained with categorical cross-entropy on
one-hot targets.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import torch
from torch import nn, optim

from .config import ARCHITECTURE_VERSION, DROPOUT_RATE, IMAGE_SIZE, LEARNING_RATE, NUM_CLASSES
from .errors import TrainingFailed

logger = logging.getLogger(__name__)

# Probabilities are clipped before the log, as Keras-style losses do.
EPSILON = 1e-7

_ACTIVATIONS = (nn.ReLU, nn.Softmax)


class DigitNet(nn.Sequential):
    """
    Small CNN that maps 28x28 grayscale digits to 10 class probabilities.

    Two convolution/pooling stages extract stroke features; the flattened
    map of shape `(batch, 32 * 5 * 5)` feeds a 128-unit hidden layer.
    """

    def __init__(self) -> None:
        super().__init__(
            OrderedDict(
                [
                    ("conv1", nn.Conv2d(in_channels=1, out_channels=16, kernel_size=3)),
                    ("relu1", nn.ReLU()),
                    ("pool1", nn.MaxPool2d(kernel_size=2, stride=2)),
                    ("conv2", nn.Conv2d(in_channels=16, out_channels=32, kernel_size=3)),
                    ("relu2", nn.ReLU()),
                    ("pool2", nn.MaxPool2d(kernel_size=2, stride=2)),
                    ("flatten", nn.Flatten()),
                    ("dense1", nn.Linear(in_features=32 * 5 * 5, out_features=128)),
                    ("relu3", nn.ReLU()),
                    ("dropout", nn.Dropout(p=DROPOUT_RATE)),
                    ("dense2", nn.Linear(in_features=128, out_features=NUM_CLASSES)),
                    ("softmax", nn.Softmax(dim=1)),
                ]
            )
        )


@dataclass(frozen=True)
class LayerDescriptor:
    """Name and output shape of one layer, for display."""

    name: str
    output_shape: str


@dataclass
class FitHistory:
    """Per-epoch metrics collected by `CompiledModel.fit`."""

    loss: List[float] = field(default_factory=list)
    acc: List[float] = field(default_factory=list)
    val_loss: List[float] = field(default_factory=list)
    val_acc: List[float] = field(default_factory=list)


def categorical_crossentropy(probabilities: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    """Mean cross-entropy between predicted probabilities and one-hot targets."""
    clipped = probabilities.clamp(EPSILON, 1.0 - EPSILON)
    return -(targets * clipped.log()).sum(dim=1).mean()


def format_shape(shape: Tuple[int, ...]) -> str:
    """Render a batch-first shape with the batch dimension left open."""
    return "[" + ", ".join(["None", *(str(dim) for dim in shape[1:])]) + "]"


def select_device() -> torch.device:
    """Prefer CUDA, fall back to the CPU."""
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


class CompiledModel:
    """
    Network together with its optimizer and loss.

    This is the handle the lifecycle manager caches. It is either fully built
    (weights present, ready to predict) or it does not exist.
    """

    def __init__(
        self,
        network: DigitNet,
        learning_rate: float = LEARNING_RATE,
        device: Optional[torch.device] = None,
    ) -> None:
        self.device = device or select_device()
        self.network = network.to(self.device)
        self.optimizer = optim.Adam(self.network.parameters(), lr=learning_rate)
        self.loss_fn = categorical_crossentropy

    def fit(
        self,
        inputs: torch.Tensor,
        targets: torch.Tensor,
        epochs: int,
        batch_size: int,
        validation_data: Optional[Tuple[torch.Tensor, torch.Tensor]] = None,
        shuffle: bool = True,
        generator: Optional[torch.Generator] = None,
    ) -> FitHistory:
        """
        Train on `inputs`/`targets` with minibatch Adam.

        Args:
            inputs: Images shaped `(N, 1, 28, 28)`.
            targets: One-hot labels shaped `(N, 10)`.
            epochs: Number of passes over the data.
            batch_size: Samples per optimizer step.
            validation_data: Optional `(inputs, targets)` scored after each epoch.
            shuffle: Reorder samples every epoch.
            generator: RNG used for shuffling.

        Raises:
            TrainingFailed: if the loss stops being finite.
        """
        if inputs.size(0) != targets.size(0):
            raise TrainingFailed(
                f"Got {inputs.size(0)} inputs but {targets.size(0)} targets."
            )

        history = FitHistory()
        total = inputs.size(0)

        for epoch in range(1, epochs + 1):
            self.network.train()
            order = torch.randperm(total, generator=generator) if shuffle else torch.arange(total)
            running_loss = 0.0
            running_correct = 0

            for start in range(0, total, batch_size):
                batch_index = order[start : start + batch_size]
                batch_inputs = inputs[batch_index].to(self.device)
                batch_targets = targets[batch_index].to(self.device)

                self.optimizer.zero_grad()
                probabilities = self.network(batch_inputs)
                loss = self.loss_fn(probabilities, batch_targets)
                loss_value = loss.item()
                if not math.isfinite(loss_value):
                    raise TrainingFailed(f"Loss diverged to {loss_value} in epoch {epoch}.")
                loss.backward()
                self.optimizer.step()

                running_loss += loss_value * batch_inputs.size(0)
                running_correct += (
                    (probabilities.argmax(dim=1) == batch_targets.argmax(dim=1)).sum().item()
                )

            history.loss.append(running_loss / max(total, 1))
            history.acc.append(running_correct / max(total, 1))
            message = f"Epoch {epoch:02d}/{epochs} - loss: {history.loss[-1]:.4f} - acc: {history.acc[-1]:.4f}"

            if validation_data is not None:
                val_loss, val_acc = self.evaluate(*validation_data, batch_size=batch_size)
                history.val_loss.append(val_loss)
                history.val_acc.append(val_acc)
                message += f" - val_loss: {val_loss:.4f} - val_acc: {val_acc:.4f}"

            logger.info(message)

        return history

    def evaluate(self, inputs: torch.Tensor, targets: torch.Tensor, batch_size: int = 256) -> Tuple[float, float]:
        """Return `(loss, accuracy)` over the given one-hot labelled samples."""
        self.network.eval()
        total = inputs.size(0)
        loss_sum = 0.0
        correct = 0

        with torch.inference_mode():
            for start in range(0, total, batch_size):
                batch_inputs = inputs[start : start + batch_size].to(self.device)
                batch_targets = targets[start : start + batch_size].to(self.device)
                probabilities = self.network(batch_inputs)
                loss_sum += self.loss_fn(probabilities, batch_targets).item() * batch_inputs.size(0)
                correct += (probabilities.argmax(dim=1) == batch_targets.argmax(dim=1)).sum().item()

        return loss_sum / max(total, 1), correct / max(total, 1)

    def predict(self, inputs: torch.Tensor) -> torch.Tensor:
        """Forward pass only; returns class probabilities on the CPU."""
        self.network.eval()
        with torch.inference_mode():
            return self.network(inputs.to(self.device)).cpu()

    def layers(self) -> List[LayerDescriptor]:
        """
        Describe the layer stack by running one blank image through the network.

        Activations are folded into the layer they follow, as in the Keras
        layer listing the drawing app shows.
        """
        shapes: Dict[str, Tuple[int, ...]] = {}
        handles = []
        for name, module in self.network.named_children():

            def record(_module: nn.Module, _inputs: Any, output: torch.Tensor, name: str = name) -> None:
                shapes[name] = tuple(output.shape)

            handles.append(module.register_forward_hook(record))

        try:
            self.predict(torch.zeros(1, 1, IMAGE_SIZE, IMAGE_SIZE))
        finally:
            for handle in handles:
                handle.remove()

        return [
            LayerDescriptor(name=type(module).__name__, output_shape=format_shape(shapes[name]))
            for name, module in self.network.named_children()
            if not isinstance(module, _ACTIVATIONS)
        ]

    def state(self) -> Dict[str, Any]:
        """Checkpoint payload: weights plus the architecture they belong to."""
        return {
            "architecture_version": ARCHITECTURE_VERSION,
            "model_state": self.network.state_dict(),
        }

    @classmethod
    def from_state(cls, state: Dict[str, Any], device: Optional[torch.device] = None) -> "CompiledModel":
        """
        Rebuild a model from `state()` output.

        Raises:
            ValueError: if the checkpoint belongs to another architecture.
            RuntimeError: if the weights do not fit the layer stack.
        """
        version = state.get("architecture_version")
        if version != ARCHITECTURE_VERSION:
            raise ValueError(
                f"Checkpoint architecture v{version} does not match v{ARCHITECTURE_VERSION}."
            )
        network = DigitNet()
        network.load_state_dict(state["model_state"])
        return cls(network, device=device)


def build_network(learning_rate: float = LEARNING_RATE, device: Optional[torch.device] = None) -> CompiledModel:
    """Create an untrained model with the fixed architecture."""
    return CompiledModel(DigitNet(), learning_rate=learning_rate, device=device)
