"""Condition tensors for the multistream generator.

The generator can be steered by a learned "description" condition (e.g. a
quality label). Under classifier-free guidance the positive and negative
anchors are stacked along the batch axis and the stepper blends the two
resulting logit rows.
"""

import logging
from typing import Optional, Protocol

import torch
import torch.nn as nn

from .errors import ConfigError

logger = logging.getLogger(__name__)


def cfg_active(cfg_alpha: Optional[float]) -> bool:
    """CFG is on when alpha is set and differs from 1.0."""
    return cfg_alpha is not None and cfg_alpha != 1.0


class ConditionProvider(Protocol):
    def condition_lut(self, category: str, value: str) -> torch.Tensor: ...


class LUTConditioner(nn.Module):
    """Lookup-table conditioner: one learned embedding per (category, value).

    Args:
        dim: Output dimension (the backbone hidden size)
        categories: Mapping category -> list of possible values
    """

    def __init__(self, dim: int, categories: dict[str, list[str]]):
        super().__init__()
        self.dim = dim
        self.categories = {name: list(values) for name, values in categories.items()}
        self.embeddings = nn.ModuleDict(
            {name: nn.Embedding(len(values), dim) for name, values in self.categories.items()}
        )

    def condition_lut(self, category: str, value: str) -> torch.Tensor:
        """Embedding for one condition value, shape [1, 1, dim]."""
        if category not in self.categories:
            raise ConfigError(
                f"Unknown condition category '{category}', expected one of {sorted(self.categories)}"
            )
        values = self.categories[category]
        if value not in values:
            raise ConfigError(f"Unknown value '{value}' for condition '{category}': {values}")

        embedding = self.embeddings[category]
        index = torch.tensor([[values.index(value)]], device=embedding.weight.device)
        return embedding(index)


class ConditioningSelector:
    """Builds the condition tensor handed to the stepper.

    Args:
        provider: Generator's condition provider, None if it has none
        category: Condition category to look up
        positive: Anchor used for the (conditioned) positive branch
        negative: Anchor used for the negative branch under CFG
        require: Fail when the generator cannot be conditioned
    """

    def __init__(
        self,
        provider: Optional[ConditionProvider],
        category: str = "description",
        positive: str = "very_good",
        negative: str = "very_bad",
        require: bool = False,
    ):
        self.provider = provider
        self.category = category
        self.positive = positive
        self.negative = negative
        self.require = require

    def select(self, cfg_alpha: Optional[float] = None) -> Optional[torch.Tensor]:
        """Return [1, 1, dim], or [2, 1, dim] (positive ++ negative) under CFG."""
        use_cfg = cfg_active(cfg_alpha)

        if self.provider is None:
            if use_cfg:
                raise ConfigError(
                    f"cfg_alpha={cfg_alpha} requires a conditioned generator, "
                    "but the loaded model has no condition provider"
                )
            if self.require:
                raise ConfigError("Conditioning requested but the loaded model has no condition provider")
            return None

        with torch.no_grad():
            positive = self.provider.condition_lut(self.category, self.positive)
            if not use_cfg:
                conditions = positive
            else:
                negative = self.provider.condition_lut(self.category, self.negative)
                conditions = torch.cat([positive, negative], dim=0)

        logger.info(f"Generated conditions: shape={tuple(conditions.shape)}, cfg={use_cfg}")
        return conditions
