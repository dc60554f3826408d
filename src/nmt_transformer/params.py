"""
Parameter registry scoped to one model instance.

Every weight of the model is requested through a ``ParameterRegistry`` under a
structured ``ParamKey``. The first request creates and initialises the
parameter; later requests for the same key return the same ``nn.Parameter``.
Tying (e.g. the output projection sharing the embedding matrix) is expressed
through an explicit alias table.
"""

import logging
from typing import NamedTuple, Optional

import torch
import torch.nn as nn

logger = logging.getLogger(__name__)


class ParamKey(NamedTuple):
    """
    Structured parameter identity.

    Args:
        scope: Owning stack ("encoder", "decoder") or a shared name ("Wemb")
        layer: 1-based layer index, or None for stack-level parameters
        sublayer: Sublayer name ("self", "context", "ffn", "aan", "emb", ...)
        role: Role inside the sublayer ("Wq", "bq", "ln_scale_pre", ...)
    """

    scope: str
    layer: Optional[int] = None
    sublayer: Optional[str] = None
    role: Optional[str] = None

    @property
    def name(self):
        parts = [self.scope]
        if self.layer is not None:
            parts.append(f"l{self.layer}")
        if self.sublayer:
            parts.append(self.sublayer)
        if self.role:
            parts.append(self.role)
        return "_".join(parts)

    def child(self, role):
        """Same location, different role."""
        return self._replace(role=role)


def glorot_uniform(tensor):
    return nn.init.xavier_uniform_(tensor)


def zeros(tensor):
    return nn.init.zeros_(tensor)


def ones(tensor):
    return nn.init.ones_(tensor)


class ParameterRegistry:
    """
    Owns the parameters of one model, keyed by ``ParamKey``.

    The registry is not an ``nn.Module``: modules store the parameters they
    receive as attributes, so ``model.parameters()`` finds them through the
    module tree and shared parameters are deduplicated by torch.
    """

    def __init__(self):
        self._params = {}
        self._aliases = {}

    def tie(self, alias, target, transpose=False):
        """
        Make ``alias`` resolve to ``target``.

        Args:
            alias: Key that will be redirected
            target: Key that owns the underlying parameter
            transpose: Whether users of ``alias`` see the target transposed
        """
        alias_name, target_name = _name(alias), _name(target)
        if alias_name in self._params:
            raise ValueError(
                f"Cannot tie '{alias_name}': a parameter with that key already exists"
            )
        self._aliases[alias_name] = (target_name, transpose)
        logger.debug("Tied %s -> %s (transpose=%s)", alias_name, target_name, transpose)

    def resolve(self, key):
        """Follow the alias table; returns ``(name, transposed)``."""
        name, transposed = _name(key), False
        seen = set()
        while name in self._aliases:
            if name in seen:
                raise ValueError(f"Alias cycle through '{name}'")
            seen.add(name)
            name, flip = self._aliases[name]
            transposed ^= flip
        return name, transposed

    def is_transposed(self, key):
        return self.resolve(key)[1]

    def get(self, key, shape, init=glorot_uniform, requires_grad=True):
        """
        Return the parameter for ``key``, creating it on first request.

        ``shape`` is the shape as seen through ``key``; for a transposed alias
        the stored parameter has the reversed shape.
        """
        name, transposed = self.resolve(key)
        shape = tuple(shape)
        stored_shape = tuple(reversed(shape)) if transposed else shape

        param = self._params.get(name)
        if param is None:
            data = torch.empty(stored_shape)
            init(data)
            param = nn.Parameter(data, requires_grad=requires_grad)
            self._params[name] = param
            logger.debug("Created parameter %s %s", name, stored_shape)
        elif tuple(param.shape) != stored_shape:
            raise ValueError(
                f"Parameter '{name}' already exists with shape {tuple(param.shape)}, "
                f"requested {stored_shape}"
            )
        return param

    def set(self, key, data, requires_grad=True):
        """Create ``key`` from existing data (e.g. pretrained embeddings)."""
        name, transposed = self.resolve(key)
        if name in self._params:
            raise ValueError(f"Parameter '{name}' already exists")
        data = data.detach().clone().float()
        if transposed:
            data = data.t().contiguous()
        param = nn.Parameter(data, requires_grad=requires_grad)
        self._params[name] = param
        return param

    def __contains__(self, key):
        return self.resolve(key)[0] in self._params

    def __len__(self):
        return len(self._params)

    def names(self):
        return sorted(self._params)


def _name(key):
    return key.name if isinstance(key, ParamKey) else str(key)
