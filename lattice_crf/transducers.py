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

"""Weighted finite-state transducers over label sequences."""

from collections.abc import Hashable, Iterable, Sequence
import dataclasses
import itertools
import logging
import re
from typing import Any, Optional, Union

import torch

from lattice_crf import semirings
from lattice_crf import sequences

logger = logging.getLogger(__name__)

DType = Any

IMPOSSIBLE_WEIGHT = -float('inf')
LABEL_SEPARATOR = ','


@dataclasses.dataclass(frozen=True)
class Transition:
  """A labeled arc between two transducer states.

  Attributes:
    index: Position of the transition in the transducer-wide arc order. Arc
      weight tensors are indexed by this value.
    source: Source state index.
    destination: Destination state index.
    label: Output label index in the transducer's label alphabet.
    weight_groups: Indices into the transducer's weight alphabet. The weight
      of the transition is the sum of the scores of these groups.
  """
  index: int
  source: int
  destination: int
  label: int
  weight_groups: tuple[int, ...]


@dataclasses.dataclass
class State:
  """A transducer state and the description of its outgoing arcs."""
  index: int
  name: str
  initial_weight: float
  final_weight: float
  destination_names: tuple[str, ...]
  labels: tuple[int, ...]
  weight_names: tuple[tuple[str, ...], ...]


@dataclasses.dataclass(frozen=True)
class _Arcs:
  transitions: tuple[Transition, ...]
  outgoing: tuple[tuple[Transition, ...], ...]
  incoming: tuple[tuple[Transition, ...], ...]
  source: torch.Tensor
  destination: torch.Tensor
  label: torch.Tensor
  is_destination: torch.Tensor
  is_source: torch.Tensor


class Transducer:
  r"""A weighted finite-state transducer whose paths are label sequences.

  A transducer has `num_states` states, each with an initial weight and a final
  weight in the log domain (-inf meaning "cannot start / end here"), and a set
  of labeled transitions. Reading one input position moves along exactly one
  transition and emits its label, so a path over an input of length T visits
  T + 1 states and emits T labels.

  Transitions are flattened into a single arc order (state by state, in the
  order their destinations were given) so that all per-arc quantities are
  tensors with a trailing `num_transitions` axis. The transducer itself holds
  no trainable parameters; arc weights come from a weight function (see
  lattice_crf.weight_fns), which uses `weight_incidence()` to tie transitions to
  shared weight groups.

  States may name destinations that are added later; names are resolved the
  first time the arc structure is needed.
  """

  def __init__(self, label_alphabet: Optional[sequences.Alphabet] = None):
    self.label_alphabet = (
        label_alphabet if label_alphabet is not None else sequences.Alphabet())
    self.weight_alphabet = sequences.Alphabet()
    self._states: list[State] = []
    self._state_indices: dict[str, int] = {}
    # Label emitted by the transitions entering a state built from labels.
    self._state_outputs: dict[str, Hashable] = {}
    self._default_only: set[int] = set()

  # Construction.

  def add_state(
      self,
      name: str,
      initial_weight: float = 0.0,
      final_weight: float = 0.0,
      destinations: Sequence[str] = (),
      labels: Optional[Sequence[Hashable]] = None,
      weight_names: Optional[Sequence[Union[str, Sequence[str]]]] = None,
  ) -> int:
    """Adds a state with transitions to (possibly not yet added) states.

    Args:
      name: Unique state name.
      initial_weight: Log-domain initial weight.
      final_weight: Log-domain final weight.
      destinations: Names of the destination state of each transition.
      labels: Output label (label alphabet entry) of each transition; defaults
        to `destinations`.
      weight_names: Weight group name(s) of each transition; defaults to one
        group per transition named `source->destination:label`.

    Returns:
      Index of the new state.
    """
    if name in self._state_indices:
      raise ValueError(f'State {name!r} already exists')
    if labels is None:
      labels = destinations
    if len(labels) != len(destinations):
      raise ValueError(
          f'State {name!r} has {len(destinations)} destinations but '
          f'{len(labels)} labels')
    if weight_names is None:
      weight_names = [f'{name}->{d}:{l}' for d, l in zip(destinations, labels)]
    if len(weight_names) != len(destinations):
      raise ValueError(
          f'State {name!r} has {len(destinations)} destinations but '
          f'{len(weight_names)} weight names')
    groups = []
    for names in weight_names:
      if isinstance(names, str):
        names = (names,)
      for weight_name in names:
        self.weight_alphabet.lookup_index(weight_name)
      groups.append(tuple(names))

    index = len(self._states)
    self._states.append(
        State(
            index=index,
            name=name,
            initial_weight=float(initial_weight),
            final_weight=float(final_weight),
            destination_names=tuple(destinations),
            labels=tuple(self.label_alphabet.lookup_index(l) for l in labels),
            weight_names=tuple(groups)))
    self._state_indices[name] = index
    self._invalidate()
    return index

  def add_fully_connected_states(self, names: Sequence[str]) -> None:
    """Adds states connected to each other, labeled by destination name."""
    for name in names:
      self.add_state(name, destinations=names)

  def add_fully_connected_states_for_labels(self) -> None:
    """Adds one state per label in the label alphabet, fully connected."""
    self._add_label_states([[True] * self.num_labels()] * self.num_labels())

  def add_states_for_labels_connected_as_in(
      self, instances: Iterable[sequences.Instance]) -> None:
    """Adds one state per label, keeping only label bigrams seen in `instances`.

    Every state can start and end a path.
    """
    self._add_label_states(self._label_connections(instances))

  def add_states_for_half_labels_connected_as_in(
      self, instances: Iterable[sequences.Instance]) -> None:
    """Label states whose incoming arcs share one weight group per label.

    Only label bigrams seen in `instances` are connected.
    """
    self._add_label_states(self._label_connections(instances),
                           weights='destination')

  def add_states_for_three_quarter_labels_connected_as_in(
      self, instances: Iterable[sequences.Instance]) -> None:
    """Label states whose arcs share per-destination feature weights.

    Each transition also gets its own `source->destination` group that only
    has a default weight, acting as an HMM-style transition score.
    """
    self._add_label_states(self._label_connections(instances),
                           weights='three_quarter')

  def add_fully_connected_states_for_three_quarter_labels(self) -> None:
    self._add_label_states([[True] * self.num_labels()] * self.num_labels(),
                           weights='three_quarter')

  def add_fully_connected_states_for_bi_labels(self) -> None:
    """Adds a second-order model: one state per pair of labels."""
    self.add_order_n_states([], orders=[2])

  def add_states_for_bi_labels_connected_as_in(
      self, instances: Iterable[sequences.Instance]) -> None:
    """Adds label-pair states, keeping only label bigrams seen in `instances`.

    Unlike `add_order_n_states`, each transition has its own weight group.
    """
    connections = self._label_connections(instances)
    entries = list(self.label_alphabet)
    names = [str(e) for e in entries]
    num_labels = len(entries)
    for i, j in itertools.product(range(num_labels), repeat=2):
      if not connections[i][j]:
        continue
      following = [k for k in range(num_labels) if connections[j][k]]
      self._add_history_state(
          (names[i], names[j]), entries[j],
          destinations=[_join_labels((names[j], names[k])) for k in following],
          labels=[entries[k] for k in following])

  def add_fully_connected_states_for_tri_labels(self) -> None:
    """Adds a third-order model: one state per triple of labels."""
    self.add_order_n_states([], orders=[3])

  def add_self_transitioning_state_for_all_labels(self, name: str) -> int:
    """Adds a single state with one self-loop per label."""
    entries = list(self.label_alphabet)
    return self.add_state(
        name, destinations=[name] * len(entries), labels=entries)

  def add_order_n_states(
      self,
      instances: Iterable[sequences.Instance],
      orders: Optional[Sequence[int]] = None,
      defaults: Optional[Sequence[bool]] = None,
      start: Optional[Hashable] = None,
      forbidden: Optional[Union[str, re.Pattern]] = None,
      allowed: Optional[Union[str, re.Pattern]] = None,
      fully_connected: bool = True,
  ) -> Optional[str]:
    """Adds the states of an order-n model over the label alphabet.

    The largest entry n of `orders` is the Markov order: states are n-tuples
    of labels, named by joining them with ','. Every entry k of `orders`
    defines a weight group shared by all transitions whose destination agrees
    on its last k + 1 labels (including the emitted one), so `orders=[0, 1]`
    gives a first-order model with both per-label and per-bigram weights.

    Args:
      instances: Training instances, used for the observed label bigrams when
        `fully_connected` is false.
      orders: Strictly increasing non-negative orders. None builds an order-0
        model: one state per label, fully connected, with one weight group per
        destination label.
      defaults: Optional flags aligned with `orders`; a true flag restricts the
        groups of that order to their default weight.
      start: Optional label standing for the context before the first
        position. It is added to the label alphabet if needed, and it may
        precede every label.
      forbidden: Pattern; a label pair `u,v` fully matching it may not occur
        in a state name or a transition.
      allowed: Pattern; if given, only label pairs `u,v` fully matching it may
        occur.
      fully_connected: Whether to add every allowed transition, or only the
        label bigrams seen in `instances`.

    Returns:
      The name of the state standing for the start context, or None if
      `start` is None. Pass it to `state_index` and `set_as_start_state` to
      make it the only initial state.
    """
    instances = list(instances)
    if start is not None:
      self.label_alphabet.lookup_index(start)
    if defaults is not None and (orders is None or
                                 len(defaults) != len(orders)):
      raise ValueError('defaults must be None or match orders')
    order = 0
    if orders is not None:
      previous = -1
      for o in orders:
        if o <= previous:
          raise ValueError(
              f'orders must be non-negative and increasing, got {orders}')
        previous = o
      order = previous if orders else 0

    entries = list(self.label_alphabet)
    names = [str(e) for e in entries]
    if order == 0:
      for entry, name in zip(entries, names):
        self._add_history_state((name,), entry, destinations=names,
                                labels=entries, weight_names=names)
      return None if start is None else str(start)

    connections = (None if fully_connected else
                   self._label_connections(instances, start))
    num_labels = len(entries)
    for history in itertools.product(range(num_labels), repeat=order):
      history_names = tuple(names[i] for i in history)
      if not all(_allowed_transition(u, v, forbidden, allowed)
                 for u, v in zip(history_names, history_names[1:])):
        continue
      destinations = []
      labels = []
      weight_names = []
      for following in range(num_labels):
        next_name = names[following]
        if not _allowed_transition(history_names[-1], next_name, forbidden,
                                   allowed):
          continue
        if connections is not None and not connections[history[-1]][following]:
          continue
        destinations.append(_next_k_gram(history_names, order, next_name))
        labels.append(entries[following])
        groups = tuple(
            _next_k_gram(history_names, o + 1, next_name) for o in orders)
        weight_names.append(groups)
        for group, default in zip(groups, defaults or ()):
          if default:
            self.restrict_to_default_feature(group)
      self._add_history_state(history_names, entries[history[-1]],
                              destinations, labels, weight_names)
    logger.debug('Added order-%d states over %d labels', order, num_labels)
    return None if start is None else _join_labels([str(start)] * order)

  def restrict_to_default_feature(self, weight_name: str) -> None:
    """Makes a weight group score only with its default weight.

    The group's feature weights are then ignored by linear weight functions
    and receive no counts.
    """
    self._default_only.add(self.weight_alphabet.lookup_index(weight_name))

  def add_start_state(self, name: str = '<START>') -> int:
    """Adds a dedicated start state that can reach every existing state.

    All existing states lose their ability to start a path. A transition into
    a state built from labels emits that state's label; other transitions
    emit the destination name.
    """
    for state in self._states:
      state.initial_weight = IMPOSSIBLE_WEIGHT
    destinations = [state.name for state in self._states]
    labels = [self._state_outputs.get(d, d) for d in destinations]
    return self.add_state(name, 0.0, 0.0, destinations, labels)

  def set_as_start_state(self, index: int) -> None:
    """Makes state `index` the only state a path can start from."""
    self.state(index)
    for state in self._states:
      state.initial_weight = 0.0 if state.index == index else IMPOSSIBLE_WEIGHT

  # Inspection.

  def num_states(self) -> int:
    return len(self._states)

  def num_transitions(self) -> int:
    return len(self._arcs().transitions)

  def num_labels(self) -> int:
    return len(self.label_alphabet)

  def num_weight_groups(self) -> int:
    return len(self.weight_alphabet)

  def states(self) -> Sequence[State]:
    return tuple(self._states)

  def state(self, index: int) -> State:
    if not 0 <= index < len(self._states):
      raise IndexError(
          f'State index {index} out of range [0, {len(self._states)})')
    return self._states[index]

  def state_index(self, name: str) -> int:
    try:
      return self._state_indices[name]
    except KeyError:
      raise KeyError(f'No state named {name!r}') from None

  def transitions(self) -> Sequence[Transition]:
    """All transitions in arc order."""
    return self._arcs().transitions

  def transitions_from(self, index: int) -> Sequence[Transition]:
    self.state(index)
    return self._arcs().outgoing[index]

  def transitions_into(self, index: int) -> Sequence[Transition]:
    self.state(index)
    return self._arcs().incoming[index]

  def initial_weights(self, dtype: Optional[DType] = torch.float64
                      ) -> torch.Tensor:
    return torch.tensor([s.initial_weight for s in self._states], dtype=dtype)

  def final_weights(self, dtype: Optional[DType] = torch.float64
                    ) -> torch.Tensor:
    return torch.tensor([s.final_weight for s in self._states], dtype=dtype)

  # Tensor views of the arc structure.

  def arcs(self) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Returns (source, destination, label) int64 tensors of shape [E]."""
    arcs = self._arcs()
    return arcs.source, arcs.destination, arcs.label

  def weight_incidence(self, dtype: Optional[DType] = torch.float64
                       ) -> torch.Tensor:
    """[num_transitions, num_weight_groups] 0/1 matrix tying arcs to groups.

    A transition listing the same group twice counts it twice.
    """
    incidence = torch.zeros(
        [self.num_transitions(), self.num_weight_groups()], dtype=dtype)
    for transition in self.transitions():
      for group in transition.weight_groups:
        incidence[transition.index, group] += 1
    return incidence

  def feature_mask(self, dtype: Optional[DType] = torch.float64
                   ) -> torch.Tensor:
    """[num_weight_groups] 1 for groups using features, 0 for default-only."""
    mask = torch.ones([self.num_weight_groups()], dtype=dtype)
    for group in self._default_only:
      mask[group] = 0
    return mask

  def label_incidence(self, dtype: Optional[DType] = torch.float64
                      ) -> torch.Tensor:
    """[num_transitions, num_labels] one-hot matrix of transition labels."""
    _, _, label = self.arcs()
    return torch.nn.functional.one_hot(
        label, num_classes=self.num_labels()).to(dtype)

  def gather_source(self, weights: torch.Tensor) -> torch.Tensor:
    """Maps [..., num_states] state values onto [..., num_transitions] arcs."""
    self._check_states_axis(weights)
    return weights[..., self._arcs().source]

  def gather_destination(self, weights: torch.Tensor) -> torch.Tensor:
    self._check_states_axis(weights)
    return weights[..., self._arcs().destination]

  def destination_table(
      self, weights: torch.Tensor,
      semiring: semirings.Semiring[torch.Tensor]) -> torch.Tensor:
    """Spreads arc values into a [..., num_states, num_transitions] table.

    result[..., q, e] = weights[..., e] if transition e enters state q, and the
    semiring zero otherwise.
    """
    self._check_transitions_axis(weights)
    return torch.where(self._arcs().is_destination,
                       torch.unsqueeze(weights, -2),
                       semiring.zeros([], weights.dtype))

  def forward_reduce(
      self, weights: torch.Tensor,
      semiring: semirings.Semiring[torch.Tensor]) -> torch.Tensor:
    """The reduction used in the forward algorithm.

    For each state q, sums over all transitions e entering q, i.e.

    result[..., q] = sum_{e: p-e->q} weights[..., e]

    Args:
      weights: [batch_dims..., num_transitions] arc values.
      semiring: The semiring for carrying out the summation.

    Returns:
      [batch_dims..., num_states] reduced values.
    """
    return semiring.sum(self.destination_table(weights, semiring), dim=-1)

  def backward_reduce(
      self, weights: torch.Tensor,
      semiring: semirings.Semiring[torch.Tensor]) -> torch.Tensor:
    """The reduction used in the backward algorithm.

    For each state p, sums over all transitions e leaving p, i.e.

    result[..., p] = sum_{e: p-e->q} weights[..., e]

    Args:
      weights: [batch_dims..., num_transitions] arc values.
      semiring: The semiring for carrying out the summation.

    Returns:
      [batch_dims..., num_states] reduced values.
    """
    self._check_transitions_axis(weights)
    table = torch.where(self._arcs().is_source,
                        torch.unsqueeze(weights, -2),
                        semiring.zeros([], weights.dtype))
    return semiring.sum(table, dim=-1)

  # Private methods.

  def _check_states_axis(self, weights: torch.Tensor) -> None:
    if weights.ndim < 1 or weights.shape[-1] != self.num_states():
      raise ValueError(
          f'weights.shape[-1] should be {self.num_states()} (the number of '
          f'states), got weights.shape={tuple(weights.shape)}')

  def _check_transitions_axis(self, weights: torch.Tensor) -> None:
    num_transitions = self.num_transitions()
    if weights.ndim < 1 or weights.shape[-1] != num_transitions:
      raise ValueError(
          f'weights.shape[-1] should be {num_transitions} (the number of '
          f'transitions), got weights.shape={tuple(weights.shape)}')

  def _label_connections(
      self, instances: Iterable[sequences.Instance],
      start: Optional[Hashable] = None) -> list[list[bool]]:
    """[i][j] is whether label j follows label i in some target."""
    if start is not None:
      self.label_alphabet.lookup_index(start)
    num_labels = self.num_labels()
    connections = [[False] * num_labels for _ in range(num_labels)]
    for instance in instances:
      if instance.target is None:
        continue
      for previous, current in zip(instance.target, instance.target[1:]):
        connections[previous][current] = True
    if start is not None:
      connections[self.label_alphabet.lookup_index(start)] = [True] * num_labels
    return connections

  def _add_label_states(self, connections: Sequence[Sequence[bool]],
                        weights: str = 'transition') -> None:
    entries = list(self.label_alphabet)
    names = [str(e) for e in entries]
    for i, name in enumerate(names):
      following = [j for j in range(len(entries)) if connections[i][j]]
      destinations = [names[j] for j in following]
      if weights == 'destination':
        weight_names = destinations
      elif weights == 'three_quarter':
        weight_names = [(d, f'{name}->{d}') for d in destinations]
        for _, transition_name in weight_names:
          self.restrict_to_default_feature(transition_name)
      else:
        weight_names = None
      self._add_history_state((name,), entries[i], destinations,
                              [entries[j] for j in following], weight_names)

  def _add_history_state(self, history: Sequence[str], output: Hashable,
                         destinations: Sequence[str],
                         labels: Sequence[Hashable],
                         weight_names=None) -> int:
    name = _join_labels(history)
    index = self.add_state(name, destinations=destinations, labels=labels,
                           weight_names=weight_names)
    self._state_outputs[name] = output
    return index

  def _invalidate(self) -> None:
    self.__dict__.pop('_cached_arcs', None)

  def _arcs(self) -> _Arcs:
    arcs = self.__dict__.get('_cached_arcs')
    if arcs is None:
      arcs = self._build_arcs()
      self.__dict__['_cached_arcs'] = arcs
    return arcs

  def _build_arcs(self) -> _Arcs:
    transitions = []
    outgoing = []
    incoming = [[] for _ in self._states]
    for state in self._states:
      from_state = []
      for destination_name, label, names in zip(
          state.destination_names, state.labels, state.weight_names):
        if destination_name not in self._state_indices:
          raise ValueError(
              f'State {state.name!r} has a transition to unknown state '
              f'{destination_name!r}')
        transition = Transition(
            index=len(transitions),
            source=state.index,
            destination=self._state_indices[destination_name],
            label=label,
            weight_groups=tuple(
                self.weight_alphabet.lookup_index(n, add=False) for n in names))
        transitions.append(transition)
        from_state.append(transition)
        incoming[transition.destination].append(transition)
      outgoing.append(tuple(from_state))
    if self._states and not any(
        s.initial_weight > IMPOSSIBLE_WEIGHT for s in self._states):
      logger.warning('Transducer has no state with a finite initial weight')

    source = torch.tensor([t.source for t in transitions], dtype=torch.int64)
    destination = torch.tensor(
        [t.destination for t in transitions], dtype=torch.int64)
    label = torch.tensor([t.label for t in transitions], dtype=torch.int64)
    state_ids = torch.arange(len(self._states)).unsqueeze(-1)
    logger.debug('Built transducer arcs: %d states, %d transitions',
                 len(self._states), len(transitions))
    return _Arcs(
        transitions=tuple(transitions),
        outgoing=tuple(outgoing),
        incoming=tuple(tuple(i) for i in incoming),
        source=source,
        destination=destination,
        label=label,
        is_destination=state_ids == destination,
        is_source=state_ids == source)


def _join_labels(names: Iterable[str]) -> str:
  return LABEL_SEPARATOR.join(names)


def _next_k_gram(history: Sequence[str], k: int, following: str) -> str:
  """The last k - 1 labels of `history` followed by `following`."""
  return _join_labels(list(history[len(history) + 1 - k:]) + [following])


def _allowed_transition(previous: str, current: str,
                        forbidden: Optional[Union[str, re.Pattern]],
                        allowed: Optional[Union[str, re.Pattern]]) -> bool:
  pair = _join_labels((previous, current))
  if forbidden is not None and re.fullmatch(forbidden, pair):
    return False
  if allowed is not None and not re.fullmatch(allowed, pair):
    return False
  return True
