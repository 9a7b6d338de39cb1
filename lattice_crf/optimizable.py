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

"""Label-likelihood objective for training CRFs with a gradient optimizer."""

from collections.abc import Iterable, Sequence
from concurrent import futures
import dataclasses
import logging
import math
from typing import Optional

import torch

from lattice_crf import constraints
from lattice_crf import crf as crf_lib
from lattice_crf import factors
from lattice_crf import lattices
from lattice_crf import sequences
from lattice_crf import weight_fns

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class TrainerConfig:
  """Training options.

  Attributes:
    gaussian_prior_variance: Variance of the Gaussian prior on parameters.
    num_threads: Number of worker threads evaluating the objective. Instances
      are split into this many contiguous batches.
    skip_infinite_instances: Whether instances whose labels have zero
      probability under the initial parameters are skipped (with a warning)
      rather than treated as an error.
    max_iterations: Default number of optimizer iterations.
    tolerance: Convergence tolerance on the objective and gradient.
    lbfgs_history_size: Number of L-BFGS correction pairs.
  """
  gaussian_prior_variance: float = 1.0
  num_threads: int = 1
  skip_infinite_instances: bool = True
  max_iterations: int = 100
  tolerance: float = 1e-5
  lbfgs_history_size: int = 10

  def __post_init__(self):
    if self.gaussian_prior_variance <= 0:
      raise ValueError(
          f'gaussian_prior_variance must be positive, got '
          f'{self.gaussian_prior_variance}')
    if self.num_threads < 1:
      raise ValueError(f'num_threads must be at least 1, got {self.num_threads}')


@dataclasses.dataclass
class _PartialResult:
  """The contribution of a batch of instances to the objective."""
  value: float
  constraints: factors.Factors
  expectations: factors.Factors
  infinite: frozenset[int]

  def merge(self, other: '_PartialResult') -> '_PartialResult':
    return _PartialResult(
        value=self.value + other.value,
        constraints=factors.merge(self.constraints, other.constraints),
        expectations=factors.merge(self.expectations, other.expectations),
        infinite=self.infinite | other.infinite)


def contiguous_batches(num_instances: int, num_batches: int) -> list[range]:
  """Splits [0, num_instances) into contiguous batches.

  All batches have num_instances // num_batches instances except the last one,
  which also takes the remainder.
  """
  size = num_instances // num_batches
  return [
      range(i * size, num_instances if i == num_batches - 1 else (i + 1) * size)
      for i in range(num_batches)
  ]


class CRFOptimizableByLabelLikelihood:
  """The conditional log-likelihood of the training labels, plus a prior.

  value = sum_i w_i (constrained_i - unconstrained_i) + gaussian_prior
  gradient = constraints - expectations + gaussian_prior_gradient

  where constrained_i / unconstrained_i are the total weights of the sum
  lattice of instance i with and without its target labels pinned, and
  constraints / expectations are the feature counts accumulated from those
  lattices. For a LinearWeightFn these counts are computed in closed form from
  the lattice marginals; for a LocallyNormalizedWeightFn wrapping one (an MEMM)
  they are the autograd gradients of the two total weights. Other weight
  functions hold no parameters the model can exchange as Factors, and are
  rejected with a TypeError by `CRF.get_parameters`.

  Weight groups frozen on the model (`CRF.freeze_weights`) get a zero gradient.

  The value and gradient are cached until the parameters change through
  `set_parameters`. Parameters must not be changed while an evaluation is in
  progress.

  Instances whose labels have zero probability are skipped with a warning on
  the first evaluation. An instance that had a finite value in the first
  evaluation and becomes infinite later is an error, since the objective would
  silently change its support.
  """

  def __init__(self,
               crf: crf_lib.CRF,
               instances: Iterable[sequences.Instance],
               config: Optional[TrainerConfig] = None):
    self.crf = crf
    self.instances = list(instances)
    self.config = config if config is not None else TrainerConfig()
    for i, instance in enumerate(self.instances):
      if instance.target is None:
        raise ValueError(
            f'Training instance {instance.display_name(i)} has no target')
    self._template = crf.get_parameters()
    self._use_marginals = isinstance(crf.weight_fn, weight_fns.LinearWeightFn)
    self._infinite_instances: Optional[frozenset[int]] = None
    self._stamp = 0
    self._cached_stamp = -1
    self._cached_value = 0.0
    self._cached_gradient = torch.zeros([self._template.num_factors()],
                                        dtype=self._template.weights.dtype)

  @property
  def infinite_instances(self) -> frozenset[int]:
    """Indices of the instances skipped because of infinite weight."""
    return self._infinite_instances or frozenset()

  def get_num_parameters(self) -> int:
    return self._template.num_factors()

  def get_parameters(self) -> torch.Tensor:
    return self.crf.get_parameters().to_vector()

  def set_parameters(self, parameters: torch.Tensor) -> None:
    self.crf.set_parameters(
        factors.Factors.from_vector(parameters, self._template))
    self._stamp += 1

  def get_parameter(self, index: int) -> float:
    return self.get_parameters()[index].item()

  def set_parameter(self, index: int, value: float) -> None:
    parameters = self.get_parameters()
    parameters[index] = value
    self.set_parameters(parameters)

  def get_value(self) -> float:
    self._maybe_evaluate()
    return self._cached_value

  def get_value_gradient(self) -> torch.Tensor:
    self._maybe_evaluate()
    return self._cached_gradient.clone()

  # Private methods.

  def _maybe_evaluate(self) -> None:
    if self._cached_stamp == self._stamp:
      return
    num_threads = min(self.config.num_threads, max(len(self.instances), 1))
    batches = contiguous_batches(len(self.instances), num_threads)
    if num_threads == 1:
      partials = [self._evaluate_batch(b) for b in batches]
    else:
      with futures.ThreadPoolExecutor(max_workers=num_threads) as executor:
        partials = list(executor.map(self._evaluate_batch, batches))
    result = partials[0]
    for partial in partials[1:]:
      result = result.merge(partial)
    self._track_infinite_instances(result.infinite)

    variance = self.config.gaussian_prior_variance
    parameters = self.crf.get_parameters()
    value = result.value + parameters.gaussian_prior(variance)
    if __debug__:
      if not math.isfinite(value):
        raise FloatingPointError(f'Label likelihood is {value}')
      result.constraints.check_numerics()
      result.expectations.check_numerics()
    frozen = self.crf.weights_frozen
    gradient = parameters.zeros_like()
    gradient.plus_(result.constraints, frozen=frozen)
    gradient.plus_(result.expectations, -1.0, frozen=frozen)
    gradient.plus_(parameters.gaussian_prior_gradient(variance), frozen=frozen)
    logger.info('Label log-likelihood objective = %.6f (%d instances, %d '
                'skipped)', value, len(self.instances), len(result.infinite))
    self._cached_value = value
    self._cached_gradient = gradient.to_vector()
    self._cached_stamp = self._stamp

  def _track_infinite_instances(self, infinite: frozenset[int]) -> None:
    if self._infinite_instances is None:
      if infinite and not self.config.skip_infinite_instances:
        names = [self.instances[i].display_name(i) for i in sorted(infinite)]
        raise ValueError(f'Instances with infinite weight: {names}')
      self._infinite_instances = infinite
      return
    newly_infinite = sorted(infinite - self._infinite_instances)
    if newly_infinite:
      i = newly_infinite[0]
      raise RuntimeError(
          f'Instance {self.instances[i].display_name(i)} used to have a finite '
          'value, but now it has infinite value')

  def _evaluate_batch(self, indices: Sequence[int]) -> _PartialResult:
    result = _PartialResult(
        value=0.0,
        constraints=self._template.zeros_like(),
        expectations=self._template.zeros_like(),
        infinite=frozenset())
    infinite = set()
    for i in indices:
      instance = self.instances[i]
      if self._use_marginals:
        weight = self._accumulate_marginals(instance, result)
      else:
        weight = self._accumulate_autograd(instance, result)
      if weight is None:
        infinite.add(i)
        logger.warning('%s has -infinite weight; skipping.',
                       instance.display_name(i))
        continue
      result.value += instance.weight * weight
    result.infinite = frozenset(infinite)
    return result

  def _lattices(self, features: torch.Tensor, target: Sequence[int]
               ) -> tuple[lattices.SumLattice, lattices.SumLattice]:
    crf = self.crf
    arc_weights = crf.arc_weights(features)
    constrained = lattices.SumLattice(
        crf.transducer, arc_weights, crf.initial_weights, crf.final_weights,
        constraints.Constraint.exact(target))
    unconstrained = lattices.SumLattice(
        crf.transducer, arc_weights, crf.initial_weights, crf.final_weights)
    return constrained, unconstrained

  def _accumulate_marginals(self, instance: sequences.Instance,
                            result: _PartialResult) -> Optional[float]:
    """Adds an instance's counts to `result`; returns None if it is infinite."""
    features = self.crf.dense_features(instance.data)
    with torch.no_grad():
      constrained, unconstrained = self._lattices(features, instance.target)
    weight = _instance_weight(constrained, unconstrained)
    if weight is not None:
      result.constraints.accumulate(constrained, features, instance.weight)
      result.expectations.accumulate(unconstrained, features, instance.weight)
    return weight

  def _accumulate_autograd(self, instance: sequences.Instance,
                           result: _PartialResult) -> Optional[float]:
    features = self.crf.dense_features(instance.data)
    with torch.enable_grad():
      constrained, unconstrained = self._lattices(features, instance.target)
      weight = _instance_weight(constrained, unconstrained)
      if weight is None:
        return None
      parameters = self.crf.parameter_tensors()
      for total, counts in ((constrained.total_weight, result.constraints),
                            (unconstrained.total_weight, result.expectations)):
        grads = torch.autograd.grad(
            total, parameters, retain_graph=True, allow_unused=True)
        for tensor, grad in zip(counts.tensors(), grads):
          if grad is not None:
            tensor.add_(grad.to(tensor.dtype), alpha=instance.weight)
    return weight


def _instance_weight(constrained: lattices.SumLattice,
                     unconstrained: lattices.SumLattice) -> Optional[float]:
  """log P(target | input), or None if it is not finite."""
  labeled = constrained.total_weight.item()
  unlabeled = unconstrained.total_weight.item()
  if math.isinf(labeled):
    logger.debug('Instance has -infinite labeled weight')
  if math.isinf(unlabeled):
    logger.debug('Instance has -infinite unlabeled weight')
  if math.isinf(labeled) or math.isinf(unlabeled):
    return None
  return labeled - unlabeled
