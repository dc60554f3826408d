"""
Building blocks shared by every sublayer.

Provides:
- activation_by_name: Map an option value to an activation function
- Dense: Affine transform with optional activation and dropout
- LayerNorm: Layer normalization
- PrePostProcess: The configurable "d/n/a/h" pipeline wrapped around sublayers

Reference: "Attention is All You Need" Section 3.1 and 5.4
"""

import torch
import torch.nn as nn
import torch.nn.functional as F

from .config import ConfigurationError
from .params import glorot_uniform, ones, zeros


def activation_by_name(name):
    """
    Return the activation function for ``name``.

    Supported: "relu", "swish" (x * sigmoid(x)).
    """
    if name == "relu":
        return F.relu
    if name == "swish":
        return F.silu
    raise ConfigurationError(f"Invalid activation name '{name}'")


class Dense(nn.Module):
    """
    Affine transform x @ W + b with built-in parameters.

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey locating the sublayer; weights use roles W<suffix>, b<suffix>
        suffix: Role suffix distinguishing several dense layers in one sublayer
        dim_in: Input dimension
        dim_out: Output dimension
        activation: Optional activation function
        dropout: Dropout probability applied after the activation (training only)
    """

    def __init__(self, registry, key, suffix, dim_in, dim_out, activation=None, dropout=0.0):
        super(Dense, self).__init__()
        self.weight = registry.get(key.child(f"W{suffix}"), (dim_in, dim_out), glorot_uniform)
        self.bias = registry.get(key.child(f"b{suffix}"), (dim_out,), zeros)
        self.activation = activation
        self.dropout = dropout

    def forward(self, x):
        x = torch.matmul(x, self.weight) + self.bias
        if self.activation is not None:
            x = self.activation(x)
        return F.dropout(x, self.dropout, self.training)

    @property
    def in_features(self):
        return self.weight.size(0)

    @property
    def out_features(self):
        return self.weight.size(1)


class LayerNorm(nn.Module):
    """
    Layer normalization module.

    Normalizes the input along the last dimension with a learned per-feature
    scale and bias: scale * (x - mean) / sqrt(var + eps) + bias.

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey locating the sublayer
        features: Number of features (d_model)
        suffix: Role suffix ("_pre" for pre-processing norms)
        eps: Epsilon for numerical stability (default: 1e-6)
    """

    def __init__(self, registry, key, features, suffix="", eps=1e-6):
        super(LayerNorm, self).__init__()
        self.scale = registry.get(key.child(f"ln_scale{suffix}"), (features,), ones)
        self.bias = registry.get(key.child(f"ln_bias{suffix}"), (features,), zeros)
        self.eps = eps

    def forward(self, x):
        mean = x.mean(-1, keepdim=True)
        var = x.var(-1, keepdim=True, unbiased=False)
        return self.scale * (x - mean) / torch.sqrt(var + self.eps) + self.bias


class PrePostProcess(nn.Module):
    """
    Order-sensitive processing pipeline around a sublayer.

    ``ops`` is read left to right:
        d: dropout (training only)
        n: layer normalization
        a: add the residual input (post-processing only)
        h: highway connection with the residual input (post-processing only)

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey locating the sublayer
        ops: Operation string, e.g. "" / "n" before and "dan" after a sublayer
        dim_model: Model dimension
        dropout: Dropout probability for "d"
        post: Whether this runs after the sublayer (enables "a" and "h")
    """

    def __init__(self, registry, key, ops, dim_model, dropout=0.0, post=False):
        super(PrePostProcess, self).__init__()
        allowed = "dnah" if post else "dn"
        for op in ops:
            if op not in allowed:
                kind = "post" if post else "pre"
                raise ConfigurationError(f"Unknown {kind}-processing operation '{op}'")
        self.ops = ops
        self.dropout = dropout
        self.post = post
        self.norm = None
        self.highway = None
        if "n" in ops:
            self.norm = LayerNorm(registry, key, dim_model, suffix="" if post else "_pre")
        if "h" in ops:
            self.highway = Dense(registry, key, "h", dim_model, dim_model)

    def forward(self, x, residual=None):
        """
        Apply the pipeline.

        Args:
            x: Sublayer output (post) or sublayer input (pre)
            residual: Original sublayer input, required for "a" and "h"
        """
        for op in self.ops:
            if op == "d":
                x = F.dropout(x, self.dropout, self.training)
            elif op == "n":
                x = self.norm(x)
            elif op == "a":
                x = x + residual
            elif op == "h":
                gate = torch.sigmoid(self.highway(residual))
                x = gate * x + (1.0 - gate) * residual
        return x
