"""Model weight persistence as named `.npz` items."""

from __future__ import annotations

from typing import Any
from typing import Optional

import torch
import yaml

from replica_train.io.items import Item
from replica_train.io.items import load_items
from replica_train.io.items import save_items
from replica_train.logging import get_logger
from replica_train.runtime.contracts import FatalTrainingError
from replica_train.runtime.replica import GraphReplica


logger = get_logger(__name__)

MODEL_CONFIG_ITEM = "special:model.yml"


class NpzModelPersistence:
    """
    Load and save replica weights by parameter name.

    A reload (`mark_reloaded=True`) must find every parameter of the replica in the
    file. A pretrained initialization copies only the names both sides share.
    """

    def __init__(self, model_config: Optional[dict[str, Any]] = None) -> None:
        self.model_config = dict(model_config or {})

    def load(self, replica: GraphReplica, path: str, mark_reloaded: bool = True) -> None:
        items = {item.name: item for item in load_items(path) if not item.name.startswith("special:")}
        replica.forward()

        params = replica.ordered_parameters()
        missing = [name for name, _ in params if name not in items]
        if mark_reloaded and missing:
            raise FatalTrainingError(
                f"Model file '{path}' is missing {len(missing)} parameters, e.g. {missing[:5]}"
            )

        loaded = 0
        with torch.no_grad():
            for name, param in params:
                item = items.get(name)
                if item is None:
                    continue
                if tuple(item.shape) != tuple(param.shape):
                    raise FatalTrainingError(
                        f"Parameter '{name}' has shape {tuple(param.shape)} but '{path}' "
                        f"stores {tuple(item.shape)}"
                    )
                param.copy_(item.to_tensor(device=param.device, dtype=param.dtype))
                loaded += 1

        if mark_reloaded:
            logger.info("Loaded model parameters from %s", path)
        else:
            logger.info(
                "Initialized %d of %d parameters from pretrained model %s",
                loaded,
                len(params),
                path,
            )

    def save(self, replica: GraphReplica, path: str, save_translator_config: bool = False) -> None:
        items = [Item.from_tensor(name, param) for name, param in replica.ordered_parameters()]
        if save_translator_config:
            text = yaml.safe_dump(self.model_config, sort_keys=True)
            items.append(Item.from_text(MODEL_CONFIG_ITEM, text))
        save_items(path, items)
        logger.debug("Saved %d parameters to %s", len(items), path)

    def read_model_config(self, path: str) -> dict[str, Any]:
        """Return the YAML model config embedded in a model file, or {}."""
        for item in load_items(path):
            if item.name == MODEL_CONFIG_ITEM:
                return dict(yaml.safe_load(item.text()) or {})
        return {}
