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

"""Sum and max lattices over a transducer unrolled along an input sequence."""

import dataclasses
import heapq
import logging
from typing import Optional

import torch

from lattice_crf import constraints
from lattice_crf import semirings
from lattice_crf import transducers

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Path:
  """A complete path through a lattice.

  Attributes:
    states: The T + 1 visited state indices.
    transitions: The T transition indices taken, one per input position.
    labels: The T emitted label indices.
    weight: Log-domain path weight, including initial and final weights.
  """
  states: tuple[int, ...]
  transitions: tuple[int, ...]
  labels: tuple[int, ...]
  weight: float

  def __len__(self) -> int:
    return len(self.transitions)


def _prepare(transducer: transducers.Transducer, arc_weights: torch.Tensor,
             initial_weights: torch.Tensor, final_weights: torch.Tensor,
             constraint: Optional[constraints.Constraint]
             ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
  """Validates lattice inputs and applies the optional constraint."""
  num_states = transducer.num_states()
  num_transitions = transducer.num_transitions()
  if arc_weights.ndim != 2 or arc_weights.shape[1] != num_transitions:
    raise ValueError(
        f'arc_weights should have shape [T, {num_transitions}], got '
        f'arc_weights.shape={tuple(arc_weights.shape)}')
  for name, weights in (('initial_weights', initial_weights),
                        ('final_weights', final_weights)):
    if weights.shape != (num_states,):
      raise ValueError(
          f'{name} should have shape [{num_states}], got '
          f'{name}.shape={tuple(weights.shape)}')
  if constraint is not None:
    arc_weights = constraint.apply(arc_weights, transducer)
  dtype = arc_weights.dtype
  return arc_weights, initial_weights.to(dtype), final_weights.to(dtype)


class SumLattice:
  r"""Forward-backward over the paths of a transducer for one input sequence.

  With arc weights w[t, e] for input positions t = 0, ..., T - 1 and
  log-domain initial / final state weights, the lattice computes in the log
  semiring

  -   alpha[0] = initial, alpha[t + 1, q] = lse_{e: p->q} alpha[t, p] + w[t, e];
  -   beta[T] = final, beta[t, p] = lse_{e: p->q} w[t, e] + beta[t + 1, q];
  -   total_weight = lse_q alpha[T, q] + final[q].

  Everything is computed eagerly when the lattice is constructed. alpha and
  total_weight are differentiable with respect to the arc, initial and final
  weights, and d total_weight / d w[t, e] equals the transition marginals.

  A total weight of -inf (no path survives, e.g. under a constraint that
  contradicts the topology) is a valid result; all marginals are then zero.

  Attributes:
    transducer: The transducer being unrolled.
    arc_weights: [T, num_transitions] arc weights, with the constraint applied.
    initial_weights: [num_states] initial weights.
    final_weights: [num_states] final weights.
    alpha: [T + 1, num_states] forward weights.
    beta: [T + 1, num_states] backward weights.
    total_weight: Scalar log partition function.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               arc_weights: torch.Tensor,
               initial_weights: torch.Tensor,
               final_weights: torch.Tensor,
               constraint: Optional[constraints.Constraint] = None):
    self.transducer = transducer
    self.arc_weights, self.initial_weights, self.final_weights = _prepare(
        transducer, arc_weights, initial_weights, final_weights, constraint)
    semiring = semirings.Log
    num_positions = self.arc_weights.shape[0]
    logger.debug('Sum lattice: %d positions, %d states, %d transitions',
                 num_positions, transducer.num_states(),
                 transducer.num_transitions())

    alpha = [self.initial_weights]
    for t in range(num_positions):
      alpha.append(
          transducer.forward_reduce(
              transducer.gather_source(alpha[t]) + self.arc_weights[t],
              semiring))
    self.alpha = torch.stack(alpha)
    self.total_weight = semiring.sum(alpha[-1] + self.final_weights, dim=-1)

    beta = [self.final_weights]
    for t in reversed(range(num_positions)):
      beta.append(
          transducer.backward_reduce(
              self.arc_weights[t] + transducer.gather_destination(beta[-1]),
              semiring))
    self.beta = torch.stack(beta[::-1])

    if __debug__:
      self._check_numerics()

  def __len__(self) -> int:
    return self.arc_weights.shape[0]

  def transition_marginals(self) -> torch.Tensor:
    """[T, num_transitions] probability of taking each arc at each position."""
    alpha = self.alpha.detach()[:-1]
    beta = self.beta.detach()[1:]
    total = self.total_weight.detach()
    if torch.isneginf(total):
      return torch.zeros_like(self.arc_weights, dtype=self.alpha.dtype)
    log_xi = (self.transducer.gather_source(alpha) + self.arc_weights.detach() +
              self.transducer.gather_destination(beta))
    return torch.exp(log_xi - total)

  def state_marginals(self) -> torch.Tensor:
    """[T + 1, num_states] probability of visiting each state at each step."""
    total = self.total_weight.detach()
    if torch.isneginf(total):
      return torch.zeros_like(self.alpha)
    return torch.exp(self.alpha.detach() + self.beta.detach() - total)

  def label_marginals(self) -> torch.Tensor:
    """[T, num_labels] probability of emitting each label at each position."""
    xi = self.transition_marginals()
    return xi @ self.transducer.label_incidence(xi.dtype)

  def _check_numerics(self) -> None:
    if torch.isnan(self.alpha).any() or torch.isnan(self.beta).any():
      raise FloatingPointError('NaN in lattice forward/backward weights')
    if torch.isnan(self.total_weight) or torch.isposinf(self.total_weight):
      raise FloatingPointError(
          f'Invalid lattice total weight {self.total_weight.item()}')


class MaxLattice:
  """Viterbi and k-best search over the paths of a transducer.

  The forward pass keeps, for each position and state, the best weight of a
  partial path ending there (delta) and the arc it came through. Arc weights
  are detached: decoding does not build an autograd graph.

  Attributes:
    transducer: The transducer being unrolled.
    arc_weights: [T, num_transitions] arc weights, with the constraint applied.
    initial_weights: [num_states] initial weights.
    final_weights: [num_states] final weights.
    delta: [T + 1, num_states] best partial path weights.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               arc_weights: torch.Tensor,
               initial_weights: torch.Tensor,
               final_weights: torch.Tensor,
               constraint: Optional[constraints.Constraint] = None):
    self.transducer = transducer
    arc_weights, initial_weights, final_weights = _prepare(
        transducer, arc_weights, initial_weights, final_weights, constraint)
    self.arc_weights = arc_weights.detach()
    self.initial_weights = initial_weights.detach()
    self.final_weights = final_weights.detach()
    semiring = semirings.MaxTropical
    num_positions = self.arc_weights.shape[0]
    num_states = transducer.num_states()

    delta = [self.initial_weights]
    backpointers = []
    for t in range(num_positions):
      scores = transducer.gather_source(delta[t]) + self.arc_weights[t]
      if transducer.num_transitions() == 0:
        delta.append(semiring.zeros([num_states], scores.dtype))
        backpointers.append(torch.full([num_states], -1, dtype=torch.int64))
        continue
      values, argmax = semiring.sum_with_argmax(
          transducer.destination_table(scores, semiring), dim=-1)
      delta.append(values)
      backpointers.append(argmax)
    self.delta = torch.stack(delta)
    self._backpointers = backpointers

    if __debug__:
      self._check_numerics()

  def __len__(self) -> int:
    return self.arc_weights.shape[0]

  def _check_numerics(self) -> None:
    for name, weights in (('arc_weights', self.arc_weights),
                          ('initial_weights', self.initial_weights),
                          ('final_weights', self.final_weights),
                          ('delta', self.delta)):
      if torch.isnan(weights).any():
        raise FloatingPointError(f'NaN in max lattice {name}')
    best = self.best_weight()
    if best == float('inf'):
      raise FloatingPointError(f'Invalid max lattice best weight {best}')

  def best_weight(self) -> float:
    """The weight of the best path, -inf if there is none."""
    return semirings.MaxTropical.sum(
        self.delta[-1] + self.final_weights, dim=-1).item()

  def best_path(self) -> Optional[Path]:
    """Returns the highest scoring path, or None if no path exists.

    Ties are resolved in favour of the lowest state / transition index.
    """
    if self.transducer.num_states() == 0:
      return None
    scores = self.delta[-1] + self.final_weights
    state = int(torch.argmax(scores))
    weight = scores[state].item()
    if weight == -float('inf'):
      return None
    source, _, _ = self.transducer.arcs()
    states = [state]
    arcs = []
    for backpointer in reversed(self._backpointers):
      arc = int(backpointer[state])
      state = int(source[arc])
      arcs.append(arc)
      states.append(state)
    return self._make_path(states[::-1], arcs[::-1], weight)

  def k_best_paths(self, k: int) -> list[Path]:
    """Returns up to k paths in non-increasing weight order.

    This is a best-first search backwards from the final states. A partial
    path covering positions [t, T) is scored by its own weight plus delta[t] of
    the state it starts from, which is the exact weight of its best completion,
    so complete paths pop off the queue in order. Equal scores are popped in
    discovery order.

    Reported weights are summed left to right (initial, arcs, final), the same
    order `best_path` uses, and the result is ordered by them: paths whose
    weights only differ by rounding in the search never come out increasing.

    Args:
      k: Maximum number of paths.

    Returns:
      The best min(k, number of valid paths) paths.
    """
    if k < 0:
      raise ValueError(f'k must be non-negative, got {k}')
    delta = self.delta.tolist()
    arc_weights = self.arc_weights.tolist()
    initial = self.initial_weights.tolist()
    final = self.final_weights.tolist()
    source, _, _ = self.transducer.arcs()
    source = source.tolist()
    incoming = [[t.index for t in self.transducer.transitions_into(q)]
                for q in range(self.transducer.num_states())]

    # Node arena: a node is a partial path from (position, state) to the end.
    positions = []
    states = []
    arcs = []
    parents = []
    costs = []
    queue = []
    counter = 0

    def push(position, state, arc, parent, cost, priority):
      nonlocal counter
      positions.append(position)
      states.append(state)
      arcs.append(arc)
      parents.append(parent)
      costs.append(cost)
      heapq.heappush(queue, (-priority, counter, len(positions) - 1))
      counter += 1

    num_positions = len(self)
    for state, weight in enumerate(final):
      priority = delta[num_positions][state] + weight
      if priority > -float('inf'):
        push(num_positions, state, -1, -1, weight, priority)

    paths = []
    while queue and len(paths) < k:
      _, _, node = heapq.heappop(queue)
      position = positions[node]
      if position == 0:
        path_states = []
        path_arcs = []
        i = node
        while i != -1:
          path_states.append(states[i])
          if arcs[i] != -1:
            path_arcs.append(arcs[i])
          i = parents[i]
        weight = initial[path_states[0]]
        for t, arc in enumerate(path_arcs):
          weight += arc_weights[t][arc]
        weight += final[path_states[-1]]
        paths.append(self._make_path(path_states, path_arcs, weight))
        continue
      row = arc_weights[position - 1]
      for arc in incoming[states[node]]:
        cost = costs[node] + row[arc]
        priority = cost + delta[position - 1][source[arc]]
        if priority > -float('inf'):
          push(position - 1, source[arc], arc, node, cost, priority)
    logger.debug('k-best search: %d paths, %d nodes expanded', len(paths),
                 len(positions))
    # Stable, so equal weights keep discovery order.
    paths.sort(key=lambda p: -p.weight)
    return paths

  def _make_path(self, states, arcs, weight: float) -> Path:
    _, _, label = self.transducer.arcs()
    return Path(
        states=tuple(states),
        transitions=tuple(arcs),
        labels=tuple(int(label[a]) for a in arcs),
        weight=weight)
