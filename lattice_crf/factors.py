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

"""Model parameters and the expectation / gradient accumulator."""

from collections.abc import Iterable
import dataclasses
import functools
from typing import Any, Optional

import einops
import torch

from lattice_crf import lattices
from lattice_crf import transducers

DType = Any


@dataclasses.dataclass
class Factors:
  """A parameter-shaped bundle of tensors.

  The same structure holds the model parameters, the empirical (constrained)
  counts, the expected (unconstrained) counts and gradients, so that all of
  them can be added to one another and flattened into the vector an optimizer
  sees. The flattening order is weights, default_weights, initial_weights,
  final_weights.

  Attributes:
    weights: [num_weight_groups, num_features] feature weights.
    default_weights: [num_weight_groups] per-group bias.
    initial_weights: [num_states] initial state weights.
    final_weights: [num_states] final state weights.
  """
  weights: torch.Tensor
  default_weights: torch.Tensor
  initial_weights: torch.Tensor
  final_weights: torch.Tensor

  @classmethod
  def zeros(cls,
            transducer: transducers.Transducer,
            num_features: int,
            dtype: Optional[DType] = torch.float64) -> 'Factors':
    num_groups = transducer.num_weight_groups()
    num_states = transducer.num_states()
    return cls(
        weights=torch.zeros([num_groups, num_features], dtype=dtype),
        default_weights=torch.zeros([num_groups], dtype=dtype),
        initial_weights=torch.zeros([num_states], dtype=dtype),
        final_weights=torch.zeros([num_states], dtype=dtype))

  @classmethod
  def from_vector(cls, vector: torch.Tensor, like: 'Factors') -> 'Factors':
    """Unflattens a vector produced by `to_vector()` into the shapes of `like`."""
    if vector.shape != (like.num_factors(),):
      raise ValueError(
          f'vector should have shape [{like.num_factors()}], got '
          f'vector.shape={tuple(vector.shape)}')
    parts = []
    offset = 0
    for tensor in like.tensors():
      parts.append(vector[offset:offset + tensor.numel()].reshape(tensor.shape))
      offset += tensor.numel()
    return cls(*(p.clone().to(like.weights.dtype) for p in parts))

  def tensors(self) -> tuple[torch.Tensor, ...]:
    return (self.weights, self.default_weights, self.initial_weights,
            self.final_weights)

  def num_factors(self) -> int:
    return sum(t.numel() for t in self.tensors())

  def zeros_like(self) -> 'Factors':
    return Factors(*(torch.zeros_like(t) for t in self.tensors()))

  def clone(self) -> 'Factors':
    return Factors(*(t.clone() for t in self.tensors()))

  def zero_(self) -> 'Factors':
    for tensor in self.tensors():
      tensor.zero_()
    return self

  def structure_matches(self, other: 'Factors') -> bool:
    return all(a.shape == b.shape
               for a, b in zip(self.tensors(), other.tensors()))

  def plus_(self,
            other: 'Factors',
            factor: float = 1.0,
            frozen: Optional[torch.Tensor] = None) -> 'Factors':
    """In-place self += factor * other.

    Args:
      other: Factors of the same structure.
      factor: Multiplier for `other`.
      frozen: Optional [num_weight_groups] boolean mask. The weights and
        default weights of frozen groups are left unchanged.

    Returns:
      self, for chaining.
    """
    if not self.structure_matches(other):
      raise ValueError('Cannot add Factors of different structure')
    if frozen is None:
      for a, b in zip(self.tensors(), other.tensors()):
        a.add_(b, alpha=factor)
      return self
    if frozen.shape != self.default_weights.shape:
      raise ValueError(
          f'frozen should have shape {tuple(self.default_weights.shape)}, got '
          f'frozen.shape={tuple(frozen.shape)}')
    self.weights.add_(
        torch.where(frozen.unsqueeze(-1), torch.zeros_like(other.weights),
                    other.weights), alpha=factor)
    self.default_weights.add_(
        torch.where(frozen, torch.zeros_like(other.default_weights),
                    other.default_weights), alpha=factor)
    self.initial_weights.add_(other.initial_weights, alpha=factor)
    self.final_weights.add_(other.final_weights, alpha=factor)
    return self

  def to_vector(self) -> torch.Tensor:
    return torch.cat([t.reshape(-1) for t in self.tensors()])

  def frozen_entries(self, frozen: torch.Tensor) -> torch.Tensor:
    """[num_factors] boolean vector marking the entries of frozen groups."""
    return torch.cat([
        frozen.unsqueeze(-1).expand(self.weights.shape).reshape(-1),
        frozen,
        torch.zeros(self.initial_weights.shape, dtype=torch.bool),
        torch.zeros(self.final_weights.shape, dtype=torch.bool),
    ])

  def accumulate(self,
                 lattice: lattices.SumLattice,
                 features: torch.Tensor,
                 instance_weight: float = 1.0) -> 'Factors':
    """Adds the feature counts expected under a sum lattice.

    For each position t and transition e with marginal xi[t, e], every weight
    group g of e receives xi[t, e] * features[t] on its feature weights (unless
    the transducer restricts g to its default feature) and xi[t, e] on its
    default weight. Initial / final weights receive the state
    marginals at the first / last step.

    Args:
      lattice: A sum lattice over the transducer these factors belong to.
      features: [T, num_features] dense features the lattice was built from.
      instance_weight: Multiplier for all counts.

    Returns:
      self, for chaining.
    """
    if features.shape != (len(lattice), self.weights.shape[1]):
      raise ValueError(
          f'features should have shape [{len(lattice)}, '
          f'{self.weights.shape[1]}], got features.shape='
          f'{tuple(features.shape)}')
    dtype = self.weights.dtype
    xi = lattice.transition_marginals().to(dtype)
    gamma = lattice.state_marginals().to(dtype)
    # [T, num_weight_groups]
    group_marginals = xi @ lattice.transducer.weight_incidence(dtype)
    feature_mask = lattice.transducer.feature_mask(dtype).unsqueeze(-1)
    self.weights.add_(
        feature_mask * einops.einsum(group_marginals, features.to(dtype),
                                     't g, t f -> g f'),
        alpha=instance_weight)
    self.default_weights.add_(group_marginals.sum(dim=0), alpha=instance_weight)
    self.initial_weights.add_(gamma[0], alpha=instance_weight)
    self.final_weights.add_(gamma[-1], alpha=instance_weight)
    return self

  def gaussian_prior(self, variance: float) -> float:
    """Log density (up to a constant) of an isotropic Gaussian prior.

    Infinite parameters, e.g. the -inf initial weight of a state that cannot
    start a path, are left out.
    """
    value = 0.0
    for tensor in self.tensors():
      finite = tensor[torch.isfinite(tensor)]
      value -= float(torch.sum(finite * finite)) / (2 * variance)
    return value

  def gaussian_prior_gradient(self, variance: float) -> 'Factors':
    """Gradient of `gaussian_prior` with respect to these factors."""
    return Factors(*(
        torch.where(torch.isfinite(t), -t / variance, torch.zeros_like(t))
        for t in self.tensors()))

  def check_numerics(self) -> None:
    for name, tensor in zip(
        ('weights', 'default_weights', 'initial_weights', 'final_weights'),
        self.tensors()):
      if torch.isnan(tensor).any():
        raise FloatingPointError(f'NaN in Factors.{name}')


def merge(a: Factors, b: Factors) -> Factors:
  """Returns a + b without modifying either argument."""
  return a.clone().plus_(b)


def merge_all(factors: Iterable[Factors]) -> Factors:
  factors = list(factors)
  if not factors:
    raise ValueError('merge_all needs at least one Factors')
  return functools.reduce(merge, factors[1:], factors[0].clone())
