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

"""Label constraints restricting the paths of a lattice."""

from collections.abc import Iterable, Sequence
import dataclasses
from typing import Optional

import torch

from lattice_crf import transducers


@dataclasses.dataclass(frozen=True)
class Constraint:
  """Per-position restrictions on the labels a path may emit.

  A position may carry a positive constraint (the path must emit exactly the
  required label there) and any number of negative constraints (the path must
  not emit the forbidden labels there). Constraints never change arc weights
  other than by removing arcs: a disallowed arc gets weight -inf.

  Attributes:
    required: For each position, the required label index or None.
    forbidden: For each position, the set of forbidden label indices.
  """
  required: tuple[Optional[int], ...]
  forbidden: tuple[frozenset[int], ...]

  def __post_init__(self):
    object.__setattr__(
        self, 'required',
        tuple(None if y is None else int(y) for y in self.required))
    object.__setattr__(
        self, 'forbidden',
        tuple(frozenset(int(y) for y in f) for f in self.forbidden))
    if len(self.required) != len(self.forbidden):
      raise ValueError(
          f'required and forbidden should have the same length, got '
          f'{len(self.required)} and {len(self.forbidden)}')

  def __len__(self) -> int:
    return len(self.required)

  @classmethod
  def exact(cls, labels: Sequence[int]) -> 'Constraint':
    """Pins every position to the given label."""
    return cls(tuple(labels), tuple(frozenset() for _ in labels))

  @classmethod
  def partial(cls, labels: Sequence[Optional[int]]) -> 'Constraint':
    """Pins the positions whose label is not None."""
    return cls(tuple(labels), tuple(frozenset() for _ in labels))

  @classmethod
  def segment(cls,
              length: int,
              start: int,
              end: int,
              labels: Sequence[int],
              forbidden_after: Optional[int] = None) -> 'Constraint':
    """Pins positions [start, end] and optionally forbids a label after them.

    Args:
      length: Sequence length.
      start: First position of the segment.
      end: Last position of the segment (inclusive).
      labels: The end - start + 1 labels of the segment.
      forbidden_after: If not None, this label may not be emitted at position
        end + 1, e.g. the segment's "inside" tag, so that the segment cannot
        extend beyond `end`. Ignored when the segment ends the sequence.

    Returns:
      The constraint.
    """
    if not 0 <= start <= end < length:
      raise ValueError(
          f'Segment bounds should satisfy 0 <= start <= end < length, got '
          f'start={start}, end={end}, length={length}')
    if len(labels) != end - start + 1:
      raise ValueError(
          f'Segment [{start}, {end}] needs {end - start + 1} labels, got '
          f'{len(labels)}')
    required = [None] * length
    required[start:end + 1] = labels
    forbidden = [frozenset()] * length
    if forbidden_after is not None and end + 1 < length:
      forbidden[end + 1] = frozenset([forbidden_after])
    return cls(tuple(required), tuple(forbidden))

  def with_forbidden(self, position: int, labels: Iterable[int]) -> 'Constraint':
    """Returns a copy with extra negative constraints at `position`."""
    if not 0 <= position < len(self):
      raise ValueError(
          f'Position {position} out of range [0, {len(self)})')
    forbidden = list(self.forbidden)
    forbidden[position] = forbidden[position] | frozenset(labels)
    return Constraint(self.required, tuple(forbidden))

  def allows(self, position: int, label: int) -> bool:
    required = self.required[position]
    if required is not None and required != label:
      return False
    return label not in self.forbidden[position]

  def label_mask(self, num_labels: int) -> torch.Tensor:
    """[len(self), num_labels] bool mask of the labels allowed per position.

    Raises:
      ValueError: If a constrained label is outside [0, num_labels).
    """
    mask = torch.ones([len(self), num_labels], dtype=torch.bool)
    for t, (required, forbidden) in enumerate(
        zip(self.required, self.forbidden)):
      for label in forbidden | ({required} if required is not None else set()):
        if not 0 <= label < num_labels:
          raise ValueError(
              f'Constrained label {label} at position {t} is outside the '
              f'label alphabet [0, {num_labels})')
      if required is not None:
        mask[t] = False
        mask[t, required] = True
      for label in forbidden:
        mask[t, label] = False
    return mask

  def arc_mask(self, transducer: transducers.Transducer) -> torch.Tensor:
    """[len(self), num_transitions] bool mask of the arcs allowed per position."""
    _, _, arc_labels = transducer.arcs()
    return self.label_mask(transducer.num_labels())[:, arc_labels]

  def apply(self, arc_weights: torch.Tensor,
            transducer: transducers.Transducer) -> torch.Tensor:
    """Sets the weights of disallowed arcs to -inf.

    Args:
      arc_weights: [T, num_transitions] arc weights, with T == len(self).
      transducer: The transducer the arcs belong to.

    Returns:
      Constrained [T, num_transitions] arc weights.
    """
    if arc_weights.ndim != 2 or arc_weights.shape[0] != len(self):
      raise ValueError(
          f'Constraint of length {len(self)} cannot be applied to arc weights '
          f'of shape {tuple(arc_weights.shape)}')
    mask = self.arc_mask(transducer)
    return torch.where(
        mask, arc_weights,
        torch.full([], -torch.inf, dtype=arc_weights.dtype))
