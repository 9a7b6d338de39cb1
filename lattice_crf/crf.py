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

"""Linear-chain CRF and MEMM models."""

from collections.abc import Callable, Hashable, Sequence
import logging
import math
from typing import Any, Optional, Union

import torch
from torch import nn

from lattice_crf import constraints
from lattice_crf import factors
from lattice_crf import lattices
from lattice_crf import sequences
from lattice_crf import transducers
from lattice_crf import weight_fns

logger = logging.getLogger(__name__)

DType = Any
Features = Union[torch.Tensor, sequences.FeatureVectorSequence]


class CRF(nn.Module):
  """A linear-chain conditional random field over a transducer.

  The model combines
  -   a transducer, whose paths are the possible label sequences (see
      lattice_crf.transducers.Transducer);
  -   a weight function producing per-position arc weights from the input
      features (see lattice_crf.weight_fns);
  -   trainable initial and final state weights, initialized from the
      transducer.

  The score of a path is the sum of its initial, arc and final weights, and
  P(path | input) is exp(score - total_weight) where total_weight sums over all
  paths of the same length (global normalization). When the weight function is
  a LocallyNormalizedWeightFn the arc weights are already conditional
  log-probabilities and the model is an MEMM; see the MEMM class.

  Methods accept either a dense [T, num_features] tensor or a
  FeatureVectorSequence as input.

  Attributes:
    transducer: The model topology.
    num_features: Input feature dimension.
    weight_fn: The weight function.
    initial_weights: [num_states] initial state weights.
    final_weights: [num_states] final state weights.
    weights_frozen: [num_weight_groups] whether each weight group is held
      fixed during training.
  """

  def __init__(
      self,
      transducer: transducers.Transducer,
      num_features: int,
      weight_fn_factory: Optional[
          Callable[[transducers.Transducer], weight_fns.WeightFn]] = None,
      dtype: Optional[DType] = torch.float64):
    super().__init__()
    self.transducer = transducer
    self.num_features = num_features
    if weight_fn_factory is None:
      weight_fn_factory = lambda t: weight_fns.LinearWeightFn(
          t, num_features, dtype)
    self.weight_fn = weight_fn_factory(transducer)
    self.initial_weights = nn.Parameter(transducer.initial_weights(dtype))
    self.final_weights = nn.Parameter(transducer.final_weights(dtype))
    self.register_buffer(
        'weights_frozen',
        torch.zeros([transducer.num_weight_groups()], dtype=torch.bool))
    logger.debug('%s: %d states, %d transitions, %d weight groups, '
                 '%d features', type(self).__name__, transducer.num_states(),
                 transducer.num_transitions(),
                 transducer.num_weight_groups(), num_features)

  @property
  def is_locally_normalized(self) -> bool:
    return isinstance(self.weight_fn, weight_fns.LocallyNormalizedWeightFn)

  def dense_features(self, features: Features) -> torch.Tensor:
    if isinstance(features, sequences.FeatureVectorSequence):
      return features.to_dense(self.num_features, self.initial_weights.dtype)
    return features

  def arc_weights(self, features: Features) -> torch.Tensor:
    """[T, num_transitions] arc weights under the current parameters."""
    return self.weight_fn(self.dense_features(features))

  def sum_lattice(
      self,
      features: Features,
      constraint: Optional[constraints.Constraint] = None
  ) -> lattices.SumLattice:
    return lattices.SumLattice(self.transducer, self.arc_weights(features),
                               self.initial_weights, self.final_weights,
                               constraint)

  def max_lattice(
      self,
      features: Features,
      constraint: Optional[constraints.Constraint] = None
  ) -> lattices.MaxLattice:
    with torch.no_grad():
      arc_weights = self.arc_weights(features)
    return lattices.MaxLattice(self.transducer, arc_weights,
                               self.initial_weights, self.final_weights,
                               constraint)

  def forward(self, features: Features,
              labels: Union[torch.Tensor, Sequence[int]]) -> torch.Tensor:
    """Computes the negative log-likelihood loss of a label sequence.

    Args:
      features: [T, num_features] input features.
      labels: [T] label indices.

    Returns:
      Scalar -log P(labels | features), differentiable with respect to the
      model parameters. It is +inf if the labels are not a path of the model.
    """
    if isinstance(labels, torch.Tensor):
      labels = labels.tolist()
    arc_weights = self.arc_weights(features)
    numerator = lattices.SumLattice(
        self.transducer, arc_weights, self.initial_weights, self.final_weights,
        constraints.Constraint.exact(labels)).total_weight
    if self.is_locally_normalized:
      return -numerator
    denominator = lattices.SumLattice(
        self.transducer, arc_weights, self.initial_weights,
        self.final_weights).total_weight
    return denominator - numerator

  def best_path(
      self,
      features: Features,
      constraint: Optional[constraints.Constraint] = None
  ) -> Optional[lattices.Path]:
    """The Viterbi path, or None if no path is allowed."""
    return self.max_lattice(features, constraint).best_path()

  def k_best_paths(
      self,
      features: Features,
      k: int,
      constraint: Optional[constraints.Constraint] = None
  ) -> list[lattices.Path]:
    return self.max_lattice(features, constraint).k_best_paths(k)

  def transduce(self, features: Features) -> Optional[list[Hashable]]:
    """Returns the label names of the Viterbi path, or None if none exists."""
    path = self.best_path(features)
    if path is None:
      return None
    return self.transducer.label_alphabet.lookup_objects(path.labels)

  def constrained_total_weight(self, features: Features,
                               constraint: constraints.Constraint) -> float:
    """Log of the summed weight of the paths satisfying `constraint`."""
    with torch.no_grad():
      return self.sum_lattice(features, constraint).total_weight.item()

  def confidence(self, features: Features,
                 constraint: constraints.Constraint) -> float:
    """P(constraint holds | features) = exp(constrained - unconstrained)."""
    with torch.no_grad():
      arc_weights = self.arc_weights(features)
      unconstrained = lattices.SumLattice(
          self.transducer, arc_weights, self.initial_weights,
          self.final_weights).total_weight.item()
      constrained = lattices.SumLattice(
          self.transducer, arc_weights, self.initial_weights,
          self.final_weights, constraint).total_weight.item()
    if unconstrained == -math.inf:
      return 0.0
    return math.exp(constrained - unconstrained)

  def linear_weight_fn(self) -> weight_fns.LinearWeightFn:
    """The LinearWeightFn holding the transition parameters."""
    weight_fn = self.weight_fn
    if isinstance(weight_fn, weight_fns.LocallyNormalizedWeightFn):
      weight_fn = weight_fn.weight_fn
    if not isinstance(weight_fn, weight_fns.LinearWeightFn):
      raise TypeError(
          f'Parameters can only be exchanged with a LinearWeightFn, got '
          f'{type(weight_fn).__name__}')
    return weight_fn

  def parameter_tensors(self) -> tuple[nn.Parameter, ...]:
    """The trainable tensors, in Factors order."""
    linear = self.linear_weight_fn()
    return (linear.weights, linear.default_weights, self.initial_weights,
            self.final_weights)

  def get_parameters(self) -> factors.Factors:
    """Returns a detached copy of the parameters."""
    return factors.Factors(*(p.detach().clone()
                             for p in self.parameter_tensors()))

  def set_parameters(self, parameters: factors.Factors) -> None:
    current = self.parameter_tensors()
    if not all(p.shape == t.shape
               for p, t in zip(current, parameters.tensors())):
      raise ValueError('Parameters do not match the structure of the model')
    with torch.no_grad():
      for p, t in zip(current, parameters.tensors()):
        p.copy_(t)

  def freeze_weights(self, group: Union[int, str]) -> None:
    """Holds a weight group at its current values during training.

    Frozen groups still score transitions when decoding.

    Args:
      group: Weight group index or name.
    """
    self.weights_frozen[self._weight_group_index(group)] = True

  def unfreeze_weights(self, group: Union[int, str]) -> None:
    self.weights_frozen[self._weight_group_index(group)] = False

  def is_weights_frozen(self, group: Union[int, str]) -> bool:
    return bool(self.weights_frozen[self._weight_group_index(group)])

  def _weight_group_index(self, group: Union[int, str]) -> int:
    if isinstance(group, str):
      return self.transducer.weight_alphabet.lookup_index(group, add=False)
    num_groups = self.weights_frozen.shape[0]
    if not 0 <= group < num_groups:
      raise IndexError(
          f'Weight group {group} out of range [0, {num_groups})')
    return group


class MEMM(CRF):
  """A maximum-entropy Markov model.

  Arc weights are normalized with a log-softmax over the outgoing transitions
  of each source state, so the loss needs no denominator.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               num_features: int,
               dtype: Optional[DType] = torch.float64):
    super().__init__(
        transducer,
        num_features,
        weight_fn_factory=lambda t: weight_fns.LocallyNormalizedWeightFn(
            weight_fns.LinearWeightFn(t, num_features, dtype), t),
        dtype=dtype)
