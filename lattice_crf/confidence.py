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

"""Confidence estimation and correction of extracted segments."""

from collections.abc import Hashable, Iterable, Sequence
import dataclasses
import logging
from typing import Optional

from lattice_crf import constraints
from lattice_crf import crf as crf_lib
from lattice_crf import sequences

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Segment:
  """A labeled span [start, end] of a predicted label sequence.

  A segment opens with `start_tag` and continues while `in_tag` follows. It is
  correct when every predicted label in the span matches the truth and the
  true sequence does not continue the span with `in_tag` right after `end`
  (the segment would then end prematurely). Without a truth sequence a segment
  is never considered correct.

  Attributes:
    start: First position.
    end: Last position (inclusive).
    start_tag: Label index opening the segment.
    in_tag: Label index continuing the segment.
    predicted: The full predicted label sequence.
    truth: The full true label sequence, if known.
    confidence: Estimated probability that the span is labeled this way, or
      None if it has not been estimated.
  """
  start: int
  end: int
  start_tag: int
  in_tag: int
  predicted: tuple[int, ...]
  truth: Optional[tuple[int, ...]] = None
  confidence: Optional[float] = None
  correct: bool = dataclasses.field(init=False)
  ends_prematurely: bool = dataclasses.field(init=False)

  def __post_init__(self):
    self.correct = False
    self.ends_prematurely = False
    if self.truth is None:
      return
    self.correct = all(self.predicted[i] == self.truth[i]
                       for i in range(self.start, self.end + 1))
    if (self.correct and self.end + 1 < len(self.truth) and
        self.truth[self.end + 1] == self.in_tag):
      self.correct = False
      self.ends_prematurely = True

  def __len__(self) -> int:
    return self.end - self.start + 1

  def __contains__(self, position: int) -> bool:
    return self.start <= position <= self.end

  def labels(self) -> tuple[int, ...]:
    return self.predicted[self.start:self.end + 1]


def extract_segments(predicted: Sequence[int],
                     truth: Optional[Sequence[int]],
                     start_tags: Sequence[int],
                     in_tags: Sequence[int]) -> list[Segment]:
  """Finds the segments of a predicted label sequence.

  Args:
    predicted: Predicted label indices.
    truth: True label indices, or None.
    start_tags: Labels that open a segment.
    in_tags: in_tags[i] is the label continuing a segment opened by
      start_tags[i].

  Returns:
    Segments in order of their start position.
  """
  if len(start_tags) != len(in_tags):
    raise ValueError(
        f'Got {len(start_tags)} start tags but {len(in_tags)} in tags')
  if truth is not None and len(truth) != len(predicted):
    raise ValueError(
        f'Sequence lengths differ: predicted {len(predicted)}, '
        f'truth {len(truth)}')
  predicted = tuple(predicted)
  truth = tuple(truth) if truth is not None else None
  segments = []
  for n, label in enumerate(predicted):
    for start_tag, in_tag in zip(start_tags, in_tags):
      if label != start_tag:
        continue
      j = n + 1
      while j < len(predicted) and predicted[j] == in_tag:
        j += 1
      segments.append(
          Segment(n, j - 1, start_tag, in_tag, predicted=predicted,
                  truth=truth))
  return segments


def _label_indices(model: crf_lib.CRF, tags: Iterable[Hashable]) -> list[int]:
  alphabet = model.transducer.label_alphabet
  indices = []
  for tag in tags:
    if tag not in alphabet:
      raise ValueError(f'Unknown label {tag!r}')
    indices.append(alphabet.lookup_index(tag, add=False))
  return indices


class ConstrainedForwardBackwardConfidenceEstimator:
  """Scores a segment by the probability mass of paths that label it as predicted.

  The constrained lattice pins every position of the segment to its predicted
  label and forbids the segment's in-tag right after it, so that only paths
  producing exactly this segment remain. The confidence is
  exp(constrained total weight - unconstrained total weight).
  """

  def __init__(self, model: crf_lib.CRF):
    self.model = model

  def estimate_confidence(self, features: crf_lib.Features,
                          segment: Segment) -> float:
    constraint = constraints.Constraint.segment(
        len(segment.predicted), segment.start, segment.end, segment.labels(),
        forbidden_after=segment.in_tag)
    return self.model.confidence(features, constraint)

  def rank_segments_by_confidence(
      self, instance: sequences.Instance, start_tags: Sequence[Hashable],
      in_tags: Sequence[Hashable]) -> list[Segment]:
    """Extracts the Viterbi segments of `instance`, least confident first.

    Args:
      instance: The instance to segment. Its target, if any, is used to mark
        segments as correct or not.
      start_tags: Label names that open a segment.
      in_tags: Label names continuing the corresponding start tags.

    Returns:
      Segments sorted by non-decreasing confidence; ties keep position order.
    """
    path = self.model.best_path(instance.data)
    if path is None:
      return []
    segments = extract_segments(path.labels, instance.target,
                                _label_indices(self.model, start_tags),
                                _label_indices(self.model, in_tags))
    for segment in segments:
      segment.confidence = self.estimate_confidence(instance.data, segment)
      logger.debug('confidence=%g for segment [%d, %d]', segment.confidence,
                   segment.start, segment.end)
    return sorted(segments, key=lambda s: s.confidence)


class ConstrainedViterbiCorrector:
  """Corrects the least confident segment and re-decodes around it.

  The chosen segment is set to its true labels (plus the following position
  when the prediction ended the segment too early), and constrained Viterbi
  propagates the correction to the rest of the sequence.

  Attributes:
    model: The model used for decoding.
    confidence_estimator: Ranks segments by confidence.
    least_confident_segments: For each instance of the last call to
      `correct_least_confident_segments`, the corrected segment, or None if
      nothing was corrected.
  """

  def __init__(
      self,
      model: crf_lib.CRF,
      confidence_estimator: Optional[
          ConstrainedForwardBackwardConfidenceEstimator] = None):
    self.model = model
    self.confidence_estimator = (
        confidence_estimator if confidence_estimator is not None else
        ConstrainedForwardBackwardConfidenceEstimator(model))
    self.least_confident_segments: list[Optional[Segment]] = []

  def get_least_confident_segments(
      self, instances: Iterable[sequences.Instance],
      start_tags: Sequence[Hashable],
      in_tags: Sequence[Hashable]) -> list[Optional[Segment]]:
    """The least confident segment of each instance, None if it has none."""
    result = []
    for instance in instances:
      ranked = self.confidence_estimator.rank_segments_by_confidence(
          instance, start_tags, in_tags)
      result.append(ranked[0] if ranked else None)
    return result

  def correct_least_confident_segments(
      self,
      instances: Iterable[sequences.Instance],
      start_tags: Sequence[Hashable],
      in_tags: Sequence[Hashable],
      find_incorrect: bool = False) -> list[Optional[tuple[int, ...]]]:
    """Returns corrected label sequences, one per instance.

    Args:
      instances: Instances with targets.
      start_tags: Label names that open a segment.
      in_tags: Label names continuing the corresponding start tags.
      find_incorrect: If true, correct the least confident segment that is
        actually wrong instead of the least confident one.

    Returns:
      For each instance, the label indices after correction. Instances that
      need no correction keep their Viterbi labels; instances with no valid
      path yield None.
    """
    self.least_confident_segments = []
    corrected = []
    for i, instance in enumerate(instances):
      if instance.target is None:
        raise ValueError(
            f'Instance {instance.display_name(i)} has no target to correct '
            'towards')
      path = self.model.best_path(instance.data)
      if path is None:
        logger.warning('%s has no valid path', instance.display_name(i))
        self.least_confident_segments.append(None)
        corrected.append(None)
        continue
      predicted = path.labels
      num_incorrect = sum(p != t for p, t in zip(predicted, instance.target))
      if num_incorrect == 0:
        self.least_confident_segments.append(None)
        corrected.append(predicted)
        continue

      ranked = self.confidence_estimator.rank_segments_by_confidence(
          instance, start_tags, in_tags)
      segment = ranked[0] if ranked else None
      if find_incorrect and segment is not None:
        segment = next((s for s in ranked if not s.correct), None)
        if segment is None:
          logger.warning(
              '%s: cannot find an incorrect segment, probably because the '
              'error is in a background label', instance.display_name(i))
      self.least_confident_segments.append(segment)
      if segment is None:
        corrected.append(predicted)
        continue

      labels = [None] * len(predicted)
      for j in range(segment.start, segment.end + 1):
        labels[j] = instance.target[j]
      if segment.ends_prematurely:
        labels[segment.end + 1] = instance.target[segment.end + 1]
      corrected_path = self.model.best_path(
          instance.data, constraints.Constraint.partial(labels))
      if corrected_path is None:
        corrected.append(None)
        continue
      corrected.append(corrected_path.labels)
      logger.debug(
          '%s: %d incorrect labels before correction, %d after',
          instance.display_name(i), num_incorrect,
          sum(p != t for p, t in zip(corrected_path.labels, instance.target)))
    return corrected
