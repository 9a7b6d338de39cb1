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

"""Alphabets, sparse feature vector sequences and instances."""

from collections.abc import Hashable, Iterable, Iterator, Mapping, Sequence
import dataclasses
from typing import Any, Optional

import torch

DType = Any


class Alphabet:
  """A bijection between hashable entries and contiguous integer indices.

  Label alphabets map label names to the integers used on transitions; feature
  alphabets map feature names to columns of the dense feature matrix. Once
  `stop_growth()` is called, looking up an unknown entry is an error instead of
  silently adding it.
  """

  def __init__(self, entries: Iterable[Hashable] = ()):
    self._entries: list[Hashable] = []
    self._indices: dict[Hashable, int] = {}
    self._growth_stopped = False
    for entry in entries:
      self.lookup_index(entry)

  def __len__(self) -> int:
    return len(self._entries)

  def __iter__(self) -> Iterator[Hashable]:
    return iter(self._entries)

  def __contains__(self, entry: Hashable) -> bool:
    return entry in self._indices

  def __repr__(self) -> str:
    return f'Alphabet({self._entries!r})'

  @property
  def growth_stopped(self) -> bool:
    return self._growth_stopped

  def stop_growth(self) -> None:
    self._growth_stopped = True

  def lookup_index(self, entry: Hashable, add: bool = True) -> int:
    """Returns the index of `entry`, adding it if allowed.

    Args:
      entry: The entry to look up.
      add: Whether to add a missing entry. Ignored (treated as False) after
        `stop_growth()`.

    Returns:
      The index of the entry.

    Raises:
      KeyError: If the entry is missing and cannot be added.
    """
    index = self._indices.get(entry)
    if index is not None:
      return index
    if not add or self._growth_stopped:
      raise KeyError(f'Entry {entry!r} is not in the alphabet')
    index = len(self._entries)
    self._entries.append(entry)
    self._indices[entry] = index
    return index

  def lookup_object(self, index: int) -> Hashable:
    if not 0 <= index < len(self._entries):
      raise IndexError(
          f'Alphabet index {index} out of range [0, {len(self._entries)})')
    return self._entries[index]

  def lookup_indices(self, entries: Iterable[Hashable],
                     add: bool = True) -> list[int]:
    return [self.lookup_index(e, add=add) for e in entries]

  def lookup_objects(self, indices: Iterable[int]) -> list[Hashable]:
    return [self.lookup_object(i) for i in indices]


class FeatureVectorSequence(Sequence[Mapping[int, float]]):
  """A sequence of sparse feature vectors, one per input position.

  Each position holds a mapping from feature index to feature value. The
  sequence is never mutated by the lattices that read it.
  """

  def __init__(self, vectors: Iterable[Mapping[int, float]]):
    self._vectors = tuple(dict(v) for v in vectors)

  @classmethod
  def from_feature_names(
      cls,
      names: Iterable[Iterable[Hashable]],
      alphabet: Alphabet) -> 'FeatureVectorSequence':
    """Builds binary feature vectors from per-position feature names.

    Args:
      names: For each position, the names of the features that fire there.
      alphabet: Feature alphabet. Unknown names are added unless its growth has
        been stopped, in which case they are dropped.

    Returns:
      A FeatureVectorSequence with value 1.0 for every named feature.
    """
    vectors = []
    for position_names in names:
      vector = {}
      for name in position_names:
        if alphabet.growth_stopped and name not in alphabet:
          continue
        vector[alphabet.lookup_index(name)] = 1.0
      vectors.append(vector)
    return cls(vectors)

  def __len__(self) -> int:
    return len(self._vectors)

  def __getitem__(self, index):
    return self._vectors[index]

  def __repr__(self) -> str:
    return f'FeatureVectorSequence({list(self._vectors)!r})'

  def max_feature_index(self) -> int:
    """The largest feature index used, or -1 for an empty sequence."""
    return max((max(v) for v in self._vectors if v), default=-1)

  def to_dense(self, num_features: int,
               dtype: Optional[DType] = torch.float64) -> torch.Tensor:
    """Densifies the sequence into a [len(self), num_features] tensor.

    Raises:
      ValueError: If some feature index is outside [0, num_features).
    """
    dense = torch.zeros([len(self._vectors), num_features], dtype=dtype)
    for position, vector in enumerate(self._vectors):
      for index, value in vector.items():
        if not 0 <= index < num_features:
          raise ValueError(
              f'Feature index {index} at position {position} is outside the '
              f'model feature range [0, {num_features})')
        dense[position, index] = value
    return dense


@dataclasses.dataclass(frozen=True)
class Instance:
  """A training or decoding instance.

  Attributes:
    data: Input feature vector sequence.
    target: Optional label indices aligned with `data`.
    name: Optional name used when reporting problems with this instance.
    weight: Instance weight in the training objective.
  """
  data: FeatureVectorSequence
  target: Optional[tuple[int, ...]] = None
  name: Optional[str] = None
  weight: float = 1.0

  def __post_init__(self):
    if self.target is not None:
      object.__setattr__(self, 'target', tuple(int(y) for y in self.target))
      if len(self.target) != len(self.data):
        raise ValueError(
            f'Instance {self.name!r} has {len(self.data)} input positions but '
            f'{len(self.target)} target labels')

  def __len__(self) -> int:
    return len(self.data)

  def display_name(self, index: int) -> str:
    return self.name if self.name is not None else f'instance#{index}'
