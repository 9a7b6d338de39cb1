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

"""Maximum-likelihood training of CRFs with L-BFGS."""

from collections.abc import Iterable
import logging
from typing import Optional

import torch

from lattice_crf import crf as crf_lib
from lattice_crf import optimizable as optimizable_lib
from lattice_crf import sequences

logger = logging.getLogger(__name__)


class CRFTrainerByLikelihood:
  """Trains a CRF by maximizing the label likelihood with torch's L-BFGS.

  Parameters that are infinite (e.g. the -inf initial weight of a state that
  cannot start a path) are held fixed, as are the weight groups frozen with
  `CRF.freeze_weights`; only the remaining entries are optimized.

  Attributes:
    crf: The model being trained.
    config: Training options.
    iteration: Total number of optimizer iterations run so far.
  """

  def __init__(self,
               crf: crf_lib.CRF,
               config: Optional[optimizable_lib.TrainerConfig] = None):
    self.crf = crf
    self.config = (
        config if config is not None else optimizable_lib.TrainerConfig())
    self.iteration = 0
    self.optimizable: Optional[
        optimizable_lib.CRFOptimizableByLabelLikelihood] = None

  def train(self,
            instances: Iterable[sequences.Instance],
            num_iterations: Optional[int] = None) -> bool:
    """Runs L-BFGS on the label likelihood of `instances`.

    Args:
      instances: Training instances; every one must have a target.
      num_iterations: Maximum number of iterations, defaulting to
        `config.max_iterations`.

    Returns:
      Whether the optimizer converged before running out of iterations.
    """
    if num_iterations is None:
      num_iterations = self.config.max_iterations
    if num_iterations < 1:
      raise ValueError(f'num_iterations must be positive, got {num_iterations}')
    optimizable = optimizable_lib.CRFOptimizableByLabelLikelihood(
        self.crf, instances, self.config)
    self.optimizable = optimizable

    initial = optimizable.get_parameters()
    frozen = self.crf.get_parameters().frozen_entries(self.crf.weights_frozen)
    trainable = torch.isfinite(initial) & ~frozen
    if not torch.any(trainable):
      logger.warning('CRF has no finite parameters to train')
      return True
    free = initial[trainable].clone().requires_grad_(True)
    optimizer = torch.optim.LBFGS(
        [free],
        lr=1.0,
        max_iter=num_iterations,
        tolerance_grad=self.config.tolerance,
        tolerance_change=self.config.tolerance,
        history_size=self.config.lbfgs_history_size,
        line_search_fn='strong_wolfe')

    def assign(values: torch.Tensor) -> None:
      parameters = initial.clone()
      parameters[trainable] = values.detach()
      optimizable.set_parameters(parameters)

    def closure():
      optimizer.zero_grad()
      assign(free)
      value = optimizable.get_value()
      free.grad = -optimizable.get_value_gradient()[trainable]
      return torch.tensor(-value, dtype=free.dtype)

    logger.info('Training CRF on %d instances, %d parameters',
                len(optimizable.instances), int(trainable.sum()))
    optimizer.step(closure)
    assign(free)
    iterations = optimizer.state[free]['n_iter']
    self.iteration += iterations
    converged = iterations < num_iterations
    logger.info('CRF training finished after %d iterations (converged=%s), '
                'label log-likelihood = %.6f', iterations, converged,
                optimizable.get_value())
    return converged
