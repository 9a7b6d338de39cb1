# Copyright 2024 The LAST Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Weight functions."""

import abc
from typing import Any, Callable, Optional

import einops
import torch
from torch import nn

from lattice_crf import semirings
from lattice_crf import transducers

DType = Any

# Weight functions are the only components with trainable transition
# parameters. A WeightFn maps the dense [T, num_features] feature matrix of one
# input sequence to the [T, num_transitions] arc weights of the transducer it
# was built for. Arc weights must be a pure function of the features and the
# current parameters so that lattices built from them can be differentiated
# with autograd.


class WeightFn(nn.Module, abc.ABC):
  """Interface for weight functions."""

  @abc.abstractmethod
  def forward(self, features: torch.Tensor) -> torch.Tensor:
    """Computes arc weights for every input position.

    Args:
      features: [T, num_features] dense input features.

    Returns:
      [T, num_transitions] log-domain arc weights. weights[t, e] is the weight
      of taking transition e while reading position t.
    """
    raise NotImplementedError


class LinearWeightFn(WeightFn):
  r"""Arc weights that are linear in the input features.

  Each transition is tied to one or more weight groups of the transducer. A
  group g scores position t as $W_g \cdot x_t + b_g$, and a transition's weight
  is the sum of the scores of its groups. Groups the transducer restricts to
  their default feature score $b_g$ only.

  Attributes:
    num_features: Input feature dimension.
    weights: [num_weight_groups, num_features] feature weights.
    default_weights: [num_weight_groups] per-group bias.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               num_features: int,
               dtype: Optional[DType] = torch.float64) -> None:
    super().__init__()
    if num_features < 0:
      raise ValueError(f'num_features must be non-negative, got {num_features}')
    self.num_features = num_features
    num_groups = transducer.num_weight_groups()
    self.weights = nn.Parameter(
        torch.zeros([num_groups, num_features], dtype=dtype))
    self.default_weights = nn.Parameter(torch.zeros([num_groups], dtype=dtype))
    self.register_buffer('incidence', transducer.weight_incidence(dtype))
    self.register_buffer('feature_mask', transducer.feature_mask(dtype))

  def forward(self, features: torch.Tensor) -> torch.Tensor:
    if features.ndim != 2 or features.shape[-1] != self.num_features:
      raise ValueError(
          f'features should have shape [T, {self.num_features}], got '
          f'features.shape={tuple(features.shape)}')
    features = features.to(self.weights.dtype)
    weights = self.weights * self.feature_mask.unsqueeze(-1)
    group_scores = features @ weights.T + self.default_weights
    return einops.einsum(group_scores, self.incidence, 't g, e g -> t e')


def log_softmax_normalize(weights: torch.Tensor,
                          transducer: transducers.Transducer) -> torch.Tensor:
  """Normalizes arc weights over the outgoing arcs of each source state.

  After normalization, for every position t and every state p with at least
  one outgoing transition, `sum_{e leaving p} exp(weights[t, e]) == 1`.

  Args:
    weights: [T, num_transitions] unnormalized arc weights.
    transducer: The transducer the arcs belong to.

  Returns:
    [T, num_transitions] normalized arc weights.
  """
  log_z = transducer.backward_reduce(weights, semirings.Log)
  return weights - transducer.gather_source(log_z)


class LocallyNormalizedWeightFn(WeightFn):
  """Wrapper for turning any weight function into a locally normalized one.

  This is how maximum-entropy Markov models are expressed on top of the same
  lattice engine. Algorithms such as the sequence log-loss in lattice_crf.crf
  rely on a weight function being of this type to skip the denominator
  computation, since the total weight of all paths is then 0 (up to final
  weights).

  Attributes:
    weight_fn: Underlying weight function.
    transducer: Transducer whose source states define the normalization
      groups.
    normalize: Callable that produces normalized arc log-probabilities, e.g.
      log_softmax_normalize().
  """

  def __init__(
      self,
      weight_fn: WeightFn,
      transducer: transducers.Transducer,
      normalize: Callable[[torch.Tensor, transducers.Transducer],
                          torch.Tensor] = log_softmax_normalize,
  ) -> None:
    super().__init__()
    self.weight_fn = weight_fn
    self.transducer = transducer
    self.normalize = normalize

  def forward(self, features: torch.Tensor) -> torch.Tensor:
    return self.normalize(self.weight_fn(features), self.transducer)
